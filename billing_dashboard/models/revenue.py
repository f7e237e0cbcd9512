"""Monthly revenue aggregate models."""

import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import BigInteger, CheckConstraint, Date, DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from billing_dashboard.db.base import Base, TimestampMixin, utcnow


class CalculationSource(str, Enum):
    """Why an aggregate row holds its current values. Diagnostic only."""

    INVOICE_EVENT = "invoice_event"
    TEMPLATE = "template"
    BULK_RECALCULATION = "bulk_recalculation"


class Revenue(Base):
    """Derived revenue for one calendar month.

    ``period`` is the first day of the month and is unique: the insert
    conflict target for every write. Timestamps are set explicitly by the
    repository so an upsert never touches ``created_at`` of an existing row.
    """

    __tablename__ = "revenues"
    __table_args__ = (
        CheckConstraint("invoice_count >= 0", name="ck_revenues_invoice_count_non_negative"),
        CheckConstraint("total_amount >= 0", name="ck_revenues_total_amount_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    period: Mapped[date] = mapped_column(Date, unique=True, index=True, nullable=False)
    invoice_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False, comment="Sum of eligible invoice amounts in cents"
    )
    calculation_source: Mapped[str] = mapped_column(
        String(50), default=CalculationSource.INVOICE_EVENT.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class RevenueContribution(Base, TimestampMixin):
    """Which invoice is currently counted in which period, and for how much.

    One row per counted invoice. Makes event handling idempotent under
    duplicate delivery and lets reversals undo exactly what was recorded.
    """

    __tablename__ = "revenue_contributions"

    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    period: Mapped[date] = mapped_column(Date, index=True, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)


class InvoiceEventWatermark(Base, TimestampMixin):
    """Time of the newest event already applied for an invoice.

    Outlives the invoice's contribution, so an event older than the
    watermark is recognised as stale even after a void or delete.
    """

    __tablename__ = "invoice_event_watermarks"

    invoice_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    last_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
