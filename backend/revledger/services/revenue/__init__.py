"""Revenue ledger engine.

This package provides:
- Period key derivation for calendar months
- ChangeKind classification of invoice change events
- Bucket and aggregate arithmetic over integer minor units
- RevenueRepository: optimistic-concurrency persistence of period rows
- RevenueSyncService: the orchestrator applying change events
- Rolling-year statistics, backfill rebuilds and in-process event delivery
"""

from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.calculator import (
    BucketTotals,
    LedgerTotals,
    apply_contribution_change,
)
from revledger.services.revenue.classifier import ChangeKind, ChangePlan, classify_change, plan_change
from revledger.services.revenue.dispatcher import InvoiceEventDispatcher
from revledger.services.revenue.events import (
    Contribution,
    InvoiceChangeEvent,
    InvoiceSnapshot,
    InvoiceStatus,
)
from revledger.services.revenue.period import derive_period, format_period, parse_period
from revledger.services.revenue.repository import RevenueRecord, RevenueRepository
from revledger.services.revenue.statistics import (
    MonthlyRevenue,
    RevenueStatistics,
    RevenueStatisticsService,
    calculate_statistics,
)
from revledger.services.revenue.sync import (
    FailurePolicy,
    MutationStatus,
    RevenueSyncService,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "BucketTotals",
    "ChangeKind",
    "ChangePlan",
    "Contribution",
    "FailurePolicy",
    "InvoiceChangeEvent",
    "InvoiceEventDispatcher",
    "InvoiceSnapshot",
    "InvoiceStatus",
    "LedgerTotals",
    "MonthlyRevenue",
    "MutationStatus",
    "RevenueBackfillService",
    "RevenueRecord",
    "RevenueRepository",
    "RevenueStatistics",
    "RevenueStatisticsService",
    "RevenueSyncService",
    "SyncResult",
    "SyncStatus",
    "apply_contribution_change",
    "calculate_statistics",
    "classify_change",
    "derive_period",
    "format_period",
    "parse_period",
    "plan_change",
]
