"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.deps import build_coordinator
from app.api.v1 import executions, reconciliation, runs, webhooks
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.engine.errors import ConsistencyViolation, EngineError, InvalidRequest, NotFoundError

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging(settings.LOG_LEVEL or ("DEBUG" if settings.APP_ENV == "development" else "INFO"))
    startup_logger = get_logger("startup")
    startup_logger.info("Application starting", env=settings.APP_ENV)

    coordinator = build_coordinator()
    await coordinator.recover_stale()
    app.state.coordinator = coordinator
    yield

    startup_logger.info("Application shutting down", background_runs=len(coordinator._background))
    await coordinator.shutdown()


app = FastAPI(
    title="Document Workflow Engine API",
    description="Graph-driven document processing with cross-document reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Engine errors → HTTP ─────────────────────────────────
ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConsistencyViolation, status.HTTP_409_CONFLICT),
    (InvalidRequest, status.HTTP_400_BAD_REQUEST),
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Unhandled engine error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "context": exc.to_dict()},
    )


API_PREFIX = "/api/v1"
app.include_router(runs.router, prefix=API_PREFIX)
app.include_router(webhooks.router, prefix=API_PREFIX)
app.include_router(executions.router, prefix=API_PREFIX)
app.include_router(reconciliation.router, prefix=API_PREFIX)


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Public health-check endpoint."""
    return {"status": "ok", "env": settings.APP_ENV}
