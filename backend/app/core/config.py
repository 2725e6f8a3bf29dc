"""
Pydantic Settings — centralized configuration loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ──────────────────────────────
    POSTGRES_USER: str = "docflow_user"
    POSTGRES_PASSWORD: str = "docflow_pass"
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "docflow_db"

    # Full URL wins over the POSTGRES_* parts (e.g. sqlite+aiosqlite for local runs)
    DATABASE_URL_OVERRIDE: str = ""

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for app runtime (asyncpg)."""
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def DATABASE_URL_SYNC(self) -> str:
        """Sync URL for Alembic migrations (psycopg2)."""
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # ── Engine ────────────────────────────────
    # Documents of one run advanced concurrently; 1 keeps strict FIFO order
    ENGINE_DOCUMENT_CONCURRENCY: int = 4

    # ── User formulas ─────────────────────────
    FORMULA_TIMEOUT_MS: int = 100
    FORMULA_MAX_NODES: int = 2000
    DEFAULT_FUZZY_THRESHOLD: float = 0.8

    # ── External services ────────────────────
    HTTP_NODE_TIMEOUT: int = 30
    EXTRACTION_SERVICE_URL: str = "http://localhost:8100/extract"
    CLASSIFICATION_SERVICE_URL: str = "http://localhost:8100/classify"
    SPLITTING_SERVICE_URL: str = "http://localhost:8100/split"
    SERVICE_API_KEY: str = ""
    SERVICE_TIMEOUT: int = 120

    # ── Application ───────────────────────────
    APP_ENV: str = "development"
    LOG_LEVEL: str = ""

    model_config = {"env_file": ["../.env", ".env"], "extra": "ignore"}


settings = Settings()
