"""SQLAlchemy models."""

from billing_dashboard.models.invoice import Invoice, InvoiceStatus
from billing_dashboard.models.revenue import (
    CalculationSource,
    InvoiceEventWatermark,
    Revenue,
    RevenueContribution,
)

__all__ = [
    "CalculationSource",
    "Invoice",
    "InvoiceEventWatermark",
    "InvoiceStatus",
    "Revenue",
    "RevenueContribution",
]
