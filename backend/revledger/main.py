"""Main FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from revledger.api import health, revenue
from revledger.core.config import settings
from revledger.db.session import AsyncSessionLocal, create_tables, engine
from revledger.middleware.request_tracing import RequestTracingMiddleware
from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.sync import RevenueSyncService

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.WARNING if not settings.DEBUG else logging.DEBUG
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context manager for startup and shutdown events."""
    logger.info("application_starting", app_name=settings.APP_NAME)

    if settings.DB_AUTO_CREATE:
        await create_tables()
        logger.info("database_tables_ensured")

    app.state.revenue_sync = RevenueSyncService.from_settings(AsyncSessionLocal, settings)
    app.state.revenue_backfill = RevenueBackfillService(
        AsyncSessionLocal, store_timeout=settings.LEDGER_STORE_TIMEOUT
    )

    # Sentry is optional and must never block startup
    if settings.SENTRY_DSN:
        try:
            import sentry_sdk

            sentry_sdk.init(
                dsn=settings.SENTRY_DSN,
                environment=settings.SENTRY_ENVIRONMENT,
                traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            )
            logger.info("sentry_initialized")
        except Exception:
            logger.exception("sentry_init_failed")

    yield

    logger.info("application_stopping")
    await engine.dispose()
    logger.info("database_connections_closed")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(RequestTracingMiddleware)

app.include_router(health.router, tags=["health"])
app.include_router(revenue.router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "revledger.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
    )
