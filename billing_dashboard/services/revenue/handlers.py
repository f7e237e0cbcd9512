"""Revenue mutation handlers.

One pure function per change type. Each turns the existing aggregate (or
its absence) and the invoice snapshots into a ``RevenueMutation``: the
signed deltas to apply atomically plus the projected resulting values.
Integer arithmetic only.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from billing_dashboard.core.errors import RevenueValidationError
from billing_dashboard.core.events import InvoiceSnapshot
from billing_dashboard.services.revenue.changes import ChangeType
from billing_dashboard.services.revenue.policy import is_eligible


class AggregateValues(Protocol):
    """Anything exposing the aggregate pair (ORM row or plain value)."""

    invoice_count: int
    total_amount: int


class MutationAction(str, Enum):
    CREATE = "create"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    ADJUST = "adjust"
    NOOP = "noop"


@dataclass(frozen=True)
class RevenueMutation:
    """Outcome of a handler for one period."""

    action: MutationAction
    count_delta: int = 0
    amount_delta: int = 0
    invoice_count: int = 0
    total_amount: int = 0

    @property
    def is_noop(self) -> bool:
        return self.action is MutationAction.NOOP

    @property
    def removes_when_empty(self) -> bool:
        """Reversals delete the row instead of persisting a zero aggregate."""
        return self.action is MutationAction.DECREMENT


NOOP = RevenueMutation(MutationAction.NOOP)


def _clamp(value: int) -> int:
    return max(0, value)


def _require(snapshot: InvoiceSnapshot | None, role: str, change: ChangeType) -> InvoiceSnapshot:
    if snapshot is None:
        raise RevenueValidationError(
            f"{role} invoice snapshot is required", change_type=change.value
        )
    return snapshot


def create_aggregate(current: InvoiceSnapshot) -> RevenueMutation:
    """First eligible invoice for a period nobody has counted yet."""
    return RevenueMutation(
        MutationAction.CREATE,
        count_delta=1,
        amount_delta=current.amount,
        invoice_count=1,
        total_amount=current.amount,
    )


def handle_ineligible_to_eligible(
    existing: AggregateValues, previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> RevenueMutation:
    current = _require(current, "current", ChangeType.INELIGIBLE_TO_ELIGIBLE)
    return RevenueMutation(
        MutationAction.INCREMENT,
        count_delta=1,
        amount_delta=current.amount,
        invoice_count=existing.invoice_count + 1,
        total_amount=existing.total_amount + current.amount,
    )


def handle_eligible_to_ineligible(
    existing: AggregateValues, previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> RevenueMutation:
    previous = _require(previous, "previous", ChangeType.ELIGIBLE_TO_INELIGIBLE)
    return RevenueMutation(
        MutationAction.DECREMENT,
        count_delta=-1,
        amount_delta=-previous.amount,
        invoice_count=_clamp(existing.invoice_count - 1),
        total_amount=_clamp(existing.total_amount - previous.amount),
    )


def handle_amount_changed(
    existing: AggregateValues, previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> RevenueMutation:
    previous = _require(previous, "previous", ChangeType.ELIGIBLE_AMOUNT_CHANGED)
    current = _require(current, "current", ChangeType.ELIGIBLE_AMOUNT_CHANGED)
    difference = current.amount - previous.amount
    return RevenueMutation(
        MutationAction.ADJUST,
        count_delta=0,
        amount_delta=difference,
        invoice_count=existing.invoice_count,
        total_amount=_clamp(existing.total_amount + difference),
    )


def handle_no_change(
    existing: AggregateValues, previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> RevenueMutation:
    return NOOP


def handle_deletion(existing: AggregateValues | None, deleted: InvoiceSnapshot) -> RevenueMutation:
    """A deleted invoice is reversed like eligible→ineligible when it was eligible."""
    if existing is None or not is_eligible(deleted.status):
        return NOOP
    return handle_eligible_to_ineligible(existing, deleted, None)


Handler = Callable[
    [AggregateValues, InvoiceSnapshot | None, InvoiceSnapshot | None], RevenueMutation
]

HANDLERS: dict[ChangeType, Handler] = {
    ChangeType.INELIGIBLE_TO_ELIGIBLE: handle_ineligible_to_eligible,
    ChangeType.ELIGIBLE_TO_INELIGIBLE: handle_eligible_to_ineligible,
    ChangeType.ELIGIBLE_AMOUNT_CHANGED: handle_amount_changed,
    ChangeType.NONE: handle_no_change,
}


def compute_mutation(
    existing: AggregateValues | None,
    previous: InvoiceSnapshot | None,
    current: InvoiceSnapshot | None,
    change: ChangeType,
) -> RevenueMutation:
    """Route to the handler for ``change``.

    Without an existing aggregate the only meaningful outcome is creating
    one for an eligible current invoice; everything else is a no-op.
    """
    if existing is None:
        if current is not None and is_eligible(current.status):
            return create_aggregate(current)
        return NOOP

    return HANDLERS[change](existing, previous, current)
