"""Classification of invoice change events into ledger transitions.

The classifier is a pure decision function: it looks at eligibility, status
and period of the two snapshots and returns a ``ChangePlan`` listing the
period mutations to perform. It never touches the store.

    previous      current      same period   kind
    ----------    ----------   -----------   -----------------------
    absent        eligible     n/a           CREATE
    eligible      absent       n/a           DELETE
    ineligible    eligible     any           INELIGIBLE_TO_ELIGIBLE
    eligible      ineligible   any           ELIGIBLE_TO_INELIGIBLE
    eligible      eligible     yes, status = AMOUNT_CHANGE
    eligible      eligible     yes, status ≠ BUCKET_MOVE
    eligible      eligible     no            PERIOD_MOVE (delete + create)
    ineligible*   ineligible*  any           NO_OP

    * "absent" counts as ineligible on the other side of the pair.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum

from revledger.core.errors import InvalidEventShapeError
from revledger.services.revenue.events import (
    Contribution,
    InvoiceChangeEvent,
    InvoiceSnapshot,
    normalize_status,
)
from revledger.services.revenue.period import derive_period


class ChangeKind(str, Enum):
    """Ledger transition caused by one change event."""

    CREATE = "create"
    DELETE = "delete"
    INELIGIBLE_TO_ELIGIBLE = "ineligible_to_eligible"
    ELIGIBLE_TO_INELIGIBLE = "eligible_to_ineligible"
    AMOUNT_CHANGE = "amount_change"
    BUCKET_MOVE = "bucket_move"
    PERIOD_MOVE = "period_move"
    NO_OP = "no_op"


class MutationStep(str, Enum):
    """Position of a mutation inside its plan."""

    APPLY = "apply"
    REMOVE_FROM_PREVIOUS_PERIOD = "remove_from_previous_period"
    ADD_TO_CURRENT_PERIOD = "add_to_current_period"


@dataclass(frozen=True, slots=True)
class PeriodMutation:
    """One upsert against one period row."""

    step: MutationStep
    period: date
    kind: ChangeKind
    previous: Contribution | None
    current: Contribution | None
    invoice_version: int | None = None


@dataclass(frozen=True, slots=True)
class ChangePlan:
    invoice_id: str
    kind: ChangeKind
    mutations: tuple[PeriodMutation, ...] = ()


def classify_change(
    previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> ChangeKind:
    """Return the transition kind for a ``(previous, current)`` pair.

    Raises:
        InvalidEventShapeError: if both snapshots are absent
        InvalidDateError: if an eligible snapshot carries an unusable date
    """
    if previous is None and current is None:
        raise InvalidEventShapeError("Cannot classify an event without snapshots")

    was_eligible = previous is not None and previous.is_eligible
    is_eligible = current is not None and current.is_eligible

    if not was_eligible and not is_eligible:
        return ChangeKind.NO_OP

    if previous is None:
        return ChangeKind.CREATE
    if current is None:
        return ChangeKind.DELETE

    if not was_eligible:
        return ChangeKind.INELIGIBLE_TO_ELIGIBLE
    if not is_eligible:
        return ChangeKind.ELIGIBLE_TO_INELIGIBLE

    if derive_period(previous.date) != derive_period(current.date):
        return ChangeKind.PERIOD_MOVE

    if normalize_status(previous.status) == normalize_status(current.status):
        return ChangeKind.AMOUNT_CHANGE
    return ChangeKind.BUCKET_MOVE


def classify_contributions(
    previous: Contribution | None, current: Contribution | None
) -> ChangeKind:
    """Kind of a single-period change expressed as contributions."""
    if previous is None and current is None:
        return ChangeKind.NO_OP
    if previous is None:
        return ChangeKind.CREATE
    if current is None:
        return ChangeKind.DELETE
    if previous.status == current.status:
        return ChangeKind.AMOUNT_CHANGE
    return ChangeKind.BUCKET_MOVE


def plan_change(event: InvoiceChangeEvent) -> ChangePlan:
    """Validate an event and turn it into the period mutations it requires."""
    event.validate_shape()
    kind = classify_change(event.previous, event.current)
    invoice_id = event.invoice_id or ""
    previous, current = event.previous, event.current

    if kind is ChangeKind.NO_OP:
        return ChangePlan(invoice_id=invoice_id, kind=kind)

    if kind is ChangeKind.PERIOD_MOVE:
        return ChangePlan(
            invoice_id=invoice_id,
            kind=kind,
            mutations=(
                PeriodMutation(
                    step=MutationStep.REMOVE_FROM_PREVIOUS_PERIOD,
                    period=derive_period(previous.date),
                    kind=ChangeKind.DELETE,
                    previous=Contribution.of(previous),
                    current=None,
                    invoice_version=_version(current, previous),
                ),
                PeriodMutation(
                    step=MutationStep.ADD_TO_CURRENT_PERIOD,
                    period=derive_period(current.date),
                    kind=ChangeKind.CREATE,
                    previous=None,
                    current=Contribution.of(current),
                    invoice_version=_version(current, previous),
                ),
            ),
        )

    if kind in (ChangeKind.DELETE, ChangeKind.ELIGIBLE_TO_INELIGIBLE):
        # Removal always targets the period the invoice was counted in
        period = derive_period(previous.date)
        mutation = PeriodMutation(
            step=MutationStep.APPLY,
            period=period,
            kind=kind,
            previous=Contribution.of(previous),
            current=None,
            invoice_version=_version(current, previous),
        )
        return ChangePlan(invoice_id=invoice_id, kind=kind, mutations=(mutation,))

    mutation = PeriodMutation(
        step=MutationStep.APPLY,
        period=derive_period(current.date),
        kind=kind,
        previous=Contribution.of(previous),
        current=Contribution.of(current),
        invoice_version=_version(current, previous),
    )
    return ChangePlan(invoice_id=invoice_id, kind=kind, mutations=(mutation,))


def _version(*snapshots: InvoiceSnapshot | None) -> int | None:
    for snapshot in snapshots:
        if snapshot is not None and snapshot.version is not None:
            return snapshot.version
    return None
