"""Health check endpoints."""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from revledger.core.config import settings
from revledger.db.session import get_db
from revledger.models.revenue import RevenueSyncFailure, SyncFailureStatus

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@router.get("/health/db")
async def health_check_db(
    response: Response, db: AsyncSession = Depends(get_db)
) -> dict[str, str | int]:
    """Database health check, including the reconciliation backlog size."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        pending = await db.scalar(
            select(func.count())
            .select_from(RevenueSyncFailure)
            .where(RevenueSyncFailure.status == SyncFailureStatus.PENDING.value)
        )
        return {"status": "healthy", "database": "connected", "pending_failures": pending or 0}
    except SQLAlchemyError as e:
        logger.exception("Database health check failed")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "database": str(e)}
