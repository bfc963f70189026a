"""Invoice change events consumed by the revenue engine."""

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from revledger.core.errors import InvalidEventShapeError, InvalidSnapshotError


class InvoiceStatus(str, Enum):
    """Invoice statuses known to the ledger."""

    PAID = "paid"
    PENDING = "pending"
    DRAFT = "draft"
    VOID = "void"


ELIGIBLE_STATUSES = frozenset({InvoiceStatus.PAID.value, InvoiceStatus.PENDING.value})


def normalize_status(status: str | InvoiceStatus) -> str:
    if isinstance(status, InvoiceStatus):
        return status.value
    return str(status).strip().lower()


def is_eligible_status(status: str | InvoiceStatus) -> bool:
    """Paid and pending invoices count towards revenue; everything else is ignored."""
    return normalize_status(status) in ELIGIBLE_STATUSES


@dataclass(frozen=True, slots=True)
class InvoiceSnapshot:
    """Read-only view of an invoice at one point in time.

    ``amount`` is in minor currency units. ``version`` is optional and, when
    the invoice side provides it, must grow with every write to the invoice.
    """

    id: str
    amount: int
    status: str
    date: dt.date | dt.datetime | str
    version: int | None = None

    def __post_init__(self) -> None:
        if not str(self.id).strip():
            raise InvalidSnapshotError("Invoice snapshot has an empty id")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidSnapshotError(
                "Invoice amount must be an integer number of minor units",
                invoice_id=self.id,
                amount=self.amount,
            )
        if self.amount < 0:
            raise InvalidSnapshotError(
                "Invoice amount cannot be negative", invoice_id=self.id, amount=self.amount
            )

    @property
    def is_eligible(self) -> bool:
        return is_eligible_status(self.status)

    def to_payload(self) -> dict[str, Any]:
        raw_date = self.date.isoformat() if isinstance(self.date, dt.date) else self.date
        return {
            "id": self.id,
            "amount": self.amount,
            "status": self.status,
            "date": raw_date,
            "version": self.version,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InvoiceSnapshot":
        return cls(
            id=str(payload["id"]),
            amount=payload["amount"],
            status=payload["status"],
            date=payload["date"],
            version=payload.get("version"),
        )


@dataclass(frozen=True, slots=True)
class Contribution:
    """What one eligible invoice adds to a period: an amount in one bucket."""

    amount: int
    status: str

    @classmethod
    def of(cls, snapshot: InvoiceSnapshot | None) -> "Contribution | None":
        if snapshot is None or not snapshot.is_eligible:
            return None
        return cls(amount=snapshot.amount, status=normalize_status(snapshot.status))


def _new_event_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True, slots=True)
class InvoiceChangeEvent:
    """A ``(previous, current)`` snapshot pair.

    No ``previous`` means the invoice was created, no ``current`` means it was
    deleted, both means it was updated.
    """

    previous: InvoiceSnapshot | None = None
    current: InvoiceSnapshot | None = None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: dt.datetime = field(default_factory=_utcnow)

    @classmethod
    def created(cls, invoice: InvoiceSnapshot, **kwargs: Any) -> "InvoiceChangeEvent":
        return cls(previous=None, current=invoice, **kwargs)

    @classmethod
    def updated(
        cls, previous: InvoiceSnapshot, current: InvoiceSnapshot, **kwargs: Any
    ) -> "InvoiceChangeEvent":
        return cls(previous=previous, current=current, **kwargs)

    @classmethod
    def deleted(cls, invoice: InvoiceSnapshot, **kwargs: Any) -> "InvoiceChangeEvent":
        return cls(previous=invoice, current=None, **kwargs)

    @property
    def invoice_id(self) -> str | None:
        snapshot = self.current or self.previous
        return snapshot.id if snapshot else None

    def validate_shape(self) -> None:
        """Fail fast on events no classifier row can describe."""
        if self.previous is None and self.current is None:
            raise InvalidEventShapeError(
                "Change event has neither a previous nor a current snapshot",
                event_id=self.event_id,
            )
        if (
            self.previous is not None
            and self.current is not None
            and self.previous.id != self.current.id
        ):
            raise InvalidEventShapeError(
                "Change event snapshots belong to different invoices",
                event_id=self.event_id,
                previous_id=self.previous.id,
                current_id=self.current.id,
            )

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "occurred_at": self.occurred_at.isoformat(),
            "previous": self.previous.to_payload() if self.previous else None,
            "current": self.current.to_payload() if self.current else None,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InvoiceChangeEvent":
        previous = payload.get("previous")
        current = payload.get("current")
        occurred_at = payload.get("occurred_at")
        return cls(
            previous=InvoiceSnapshot.from_payload(previous) if previous else None,
            current=InvoiceSnapshot.from_payload(current) if current else None,
            event_id=payload.get("event_id") or _new_event_id(),
            occurred_at=dt.datetime.fromisoformat(occurred_at) if occurred_at else _utcnow(),
        )
