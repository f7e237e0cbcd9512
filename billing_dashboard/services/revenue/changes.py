"""Classify an invoice transition for revenue purposes."""

from enum import Enum

from billing_dashboard.core.events import InvoiceSnapshot
from billing_dashboard.services.revenue.policy import is_eligible


class ChangeType(str, Enum):
    """Revenue-relevant transition between two invoice snapshots."""

    ELIGIBLE_TO_INELIGIBLE = "eligible_to_ineligible"
    INELIGIBLE_TO_ELIGIBLE = "ineligible_to_eligible"
    ELIGIBLE_AMOUNT_CHANGED = "eligible_amount_changed"
    NONE = "none"


def detect_change(
    previous: InvoiceSnapshot | None, current: InvoiceSnapshot | None
) -> ChangeType:
    """Classify the transition from ``previous`` to ``current``.

    A missing snapshot counts as ineligible: ``previous`` is None for a new
    invoice and ``current`` is None for a deleted one. Eligibility flips win
    over amount edits, since they move the invoice count and amount edits do not.
    """
    prev_eligible = previous is not None and is_eligible(previous.status)
    curr_eligible = current is not None and is_eligible(current.status)

    if prev_eligible and not curr_eligible:
        return ChangeType.ELIGIBLE_TO_INELIGIBLE
    if not prev_eligible and curr_eligible:
        return ChangeType.INELIGIBLE_TO_ELIGIBLE
    if prev_eligible and curr_eligible and previous.amount != current.amount:  # type: ignore[union-attr]
        return ChangeType.ELIGIBLE_AMOUNT_CHANGED
    return ChangeType.NONE
