"""Invoice model."""

import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import BigInteger, CheckConstraint, Date, DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from billing_dashboard.db.base import Base, TimestampMixin


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    PENDING = "pending"
    PAID = "paid"
    VOID = "void"


class Invoice(Base, TimestampMixin):
    """Customer invoice.

    Amounts are stored in minor currency units (cents).
    """

    __tablename__ = "invoices"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_invoices_amount_non_negative"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True, index=True, comment="Billed customer"
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="Amount in cents")
    status: Mapped[str] = mapped_column(
        String(20), default=InvoiceStatus.PENDING.value, nullable=False, index=True
    )
    effective_date: Mapped[date] = mapped_column(
        Date, nullable=False, index=True, comment="Date that decides the revenue period"
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
