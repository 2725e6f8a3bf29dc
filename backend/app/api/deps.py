"""Shared dependencies for API routes."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import async_session
from app.engine.clients import build_service_clients
from app.engine.coordinator import RunCoordinator
from app.engine.formula import FormulaEvaluator
from app.engine.interfaces import Collaborators
from app.engine.state_store import ExecutionStateStore
from app.engine.stores import SqlDefinitionStore, SqlDocumentStore, SqlGraphStore
from app.reconciliation.review import ReconciliationReview


def build_coordinator(session_factory: async_sessionmaker[AsyncSession] | None = None) -> RunCoordinator:
    """Coordinator wired to the SQL stores and the configured service clients."""
    state = ExecutionStateStore(session_factory or async_session)
    services = Collaborators(
        graph_store=SqlGraphStore(state),
        document_store=SqlDocumentStore(state),
        definition_store=SqlDefinitionStore(state),
        formulas=FormulaEvaluator(),
        **build_service_clients(),
    )
    return RunCoordinator(state, services)


async def get_coordinator(request: Request) -> RunCoordinator:
    """The process-wide coordinator created in the app lifespan."""
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow engine is not running",
        )
    return coordinator


async def get_review(coordinator: RunCoordinator = Depends(get_coordinator)) -> ReconciliationReview:
    return ReconciliationReview(coordinator)
