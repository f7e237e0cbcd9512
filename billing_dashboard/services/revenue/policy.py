"""Which invoice statuses count toward recognized revenue."""

from types import MappingProxyType

from billing_dashboard.core.errors import InvariantViolationError
from billing_dashboard.models.invoice import InvoiceStatus

# Must list every InvoiceStatus member.
REVENUE_ELIGIBILITY = MappingProxyType(
    {
        InvoiceStatus.PENDING: False,
        InvoiceStatus.PAID: True,
        InvoiceStatus.VOID: False,
    }
)


def is_eligible(status: InvoiceStatus | str) -> bool:
    """Return True when an invoice in ``status`` contributes to revenue.

    Raises:
        InvariantViolationError: for a status missing from the mapping.
    """
    try:
        return REVENUE_ELIGIBILITY[InvoiceStatus(status)]
    except (KeyError, ValueError) as exc:
        raise InvariantViolationError(
            "Invoice status has no revenue eligibility rule", status=str(status)
        ) from exc
