"""SQLAlchemy models."""

from revledger.models.revenue import (
    Revenue,
    RevenueContribution,
    RevenueInvoiceVersion,
    RevenueSource,
    RevenueSyncFailure,
    SyncFailureStatus,
)

__all__ = [
    "Revenue",
    "RevenueContribution",
    "RevenueInvoiceVersion",
    "RevenueSource",
    "RevenueSyncFailure",
    "SyncFailureStatus",
]
