"""Application configuration using Pydantic settings."""

from typing import Any, Literal, Self

from pydantic import Field, PostgresDsn, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Revenue Ledger API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    RELOAD: bool = False

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "revenue_ledger"
    DATABASE_URL: str | None = Field(default=None, validate_default=True)
    DB_AUTO_CREATE: bool = False  # Create tables on startup (local development)

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: str | None, info: Any) -> str:
        """Build database URL from components if not provided."""
        if isinstance(v, str):
            return v

        data = info.data
        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=data.get("POSTGRES_USER"),
                password=data.get("POSTGRES_PASSWORD"),
                host=data.get("POSTGRES_SERVER"),
                port=data.get("POSTGRES_PORT"),
                path=f"{data.get('POSTGRES_DB') or ''}",
            ),
        )

    # Revenue ledger synchronization
    LEDGER_CONFLICT_RETRIES: int = 1  # Extra attempts after an optimistic-concurrency conflict
    LEDGER_FAILURE_POLICY: Literal["return", "raise"] = "return"
    LEDGER_TRACK_CONTRIBUTIONS: bool = True  # Per-invoice rows for duplicate/stale detection
    LEDGER_RECORD_FAILURES: bool = True  # Persist failed events for later replay
    LEDGER_CALCULATION_SOURCE: str = "invoice_event"
    LEDGER_STORE_TIMEOUT: float = 10.0  # Seconds allowed per repository call

    # Monitoring
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 1.0

    @model_validator(mode="after")
    def validate_ledger_settings(self) -> Self:
        """Reject ledger settings that would make the engine misbehave silently."""
        if self.LEDGER_CONFLICT_RETRIES < 0:
            raise ValueError("LEDGER_CONFLICT_RETRIES must be zero or greater")

        if self.LEDGER_STORE_TIMEOUT <= 0:
            raise ValueError("LEDGER_STORE_TIMEOUT must be a positive number of seconds")

        return self


settings = Settings()
