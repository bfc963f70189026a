"""Error taxonomy for the revenue ledger.

Every failure the engine can surface is a ``LedgerError``. The ``category``
attribute drives logging severity in the orchestrator and status-code mapping
in the HTTP layer:

- ``validation``: malformed input, never retried, nothing is mutated
- ``conflict``: concurrent write detected, retried by the orchestrator
- ``not_found``: referenced record missing on update, an invariant violation
- ``infrastructure``: store failure or timeout, surfaced as-is
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from revledger.services.revenue.sync import SyncResult


class LedgerError(Exception):
    """Base class for revenue ledger failures."""

    category = "unexpected"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logs and API payloads."""
        return {
            "type": type(self).__name__,
            "category": self.category,
            "message": self.message,
            "context": {key: str(value) for key, value in self.context.items()},
        }


class LedgerValidationError(LedgerError):
    """Input could not be validated; nothing was mutated."""

    category = "validation"


class InvalidDateError(LedgerValidationError):
    """A date could not be parsed or normalized to a period."""


class InvalidEventShapeError(LedgerValidationError):
    """A change event is missing both snapshots or mixes two invoices."""


class InvalidSnapshotError(LedgerValidationError):
    """An invoice snapshot carries an unusable id or amount."""


class IneligibleStatusError(LedgerValidationError):
    """A bucket was requested for a status that does not contribute revenue."""


class RevenueConflictError(LedgerError):
    """A concurrent writer changed the period row between read and write."""

    category = "conflict"


class RevenueNotFoundError(LedgerError):
    """The revenue record referenced by an update does not exist."""

    category = "not_found"


class RevenueStoreError(LedgerError):
    """The underlying store failed or timed out."""

    category = "infrastructure"


class RevenueSyncError(LedgerError):
    """Raised under the ``raise`` failure policy, carrying the failed result."""

    def __init__(self, message: str, result: "SyncResult", **context: Any) -> None:
        super().__init__(message, **context)
        self.result = result
        if result.error is not None:
            self.category = result.error.category
