"""Reconciliation log for events the engine could not fully apply."""

import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revledger.models.revenue import RevenueSyncFailure, SyncFailureStatus


@dataclass(frozen=True, slots=True)
class PendingFailure:
    id: uuid.UUID
    event_id: str
    payload: dict[str, Any]
    attempts: int


class SyncFailureRepository:
    """Stores failed or half-applied change events for replay."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        *,
        event_id: str,
        invoice_id: str | None,
        payload: dict[str, Any],
        error_type: str,
        error_category: str,
        error_message: str,
        change_kind: str | None = None,
        step_reached: str | None = None,
        failed_step: str | None = None,
        failed_period: date | None = None,
    ) -> uuid.UUID:
        entry = RevenueSyncFailure(
            event_id=event_id,
            invoice_id=invoice_id,
            payload=payload,
            error_type=error_type,
            error_category=error_category,
            error_message=error_message,
            change_kind=change_kind,
            step_reached=step_reached,
            failed_step=failed_step,
            failed_period=failed_period,
            status=SyncFailureStatus.PENDING.value,
            attempts=1,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry.id

    async def list_pending(self, limit: int = 100) -> list[PendingFailure]:
        result = await self.session.execute(
            select(RevenueSyncFailure)
            .where(RevenueSyncFailure.status == SyncFailureStatus.PENDING.value)
            .order_by(RevenueSyncFailure.created_at)
            .limit(limit)
        )
        return [
            PendingFailure(id=row.id, event_id=row.event_id, payload=row.payload, attempts=row.attempts)
            for row in result.scalars().all()
        ]

    async def mark_resolved(self, failure_id: uuid.UUID) -> None:
        entry = await self.session.get(RevenueSyncFailure, failure_id)
        if entry is None:
            return
        entry.status = SyncFailureStatus.RESOLVED.value
        entry.resolved_at = datetime.now(UTC)
        await self.session.flush()

    async def mark_retry_failed(self, failure_id: uuid.UUID, error_message: str) -> None:
        entry = await self.session.get(RevenueSyncFailure, failure_id)
        if entry is None:
            return
        entry.attempts += 1
        entry.error_message = error_message
        await self.session.flush()
