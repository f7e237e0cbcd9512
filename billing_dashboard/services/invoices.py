"""Invoice write path.

Every write commits first and only then returns the lifecycle event that
describes it. Publishing the event is left to the caller, so revenue
processing can never roll back or block the invoice write.
"""

import uuid
from datetime import UTC, date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.events import InvoiceEvent, InvoiceEventType, InvoiceSnapshot
from billing_dashboard.models.invoice import Invoice, InvoiceStatus

logger = structlog.get_logger()

_STATUS_EVENTS = {
    InvoiceStatus.PAID: InvoiceEventType.PAID,
    InvoiceStatus.VOID: InvoiceEventType.VOIDED,
}


class InvoiceNotFoundError(LookupError):
    """No invoice with the requested id."""


async def get_invoice(db: AsyncSession, invoice_id: uuid.UUID) -> Invoice:
    result = await db.execute(select(Invoice).where(Invoice.id == invoice_id))
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise InvoiceNotFoundError(str(invoice_id))
    return invoice


async def create_invoice(
    db: AsyncSession,
    *,
    amount: int,
    effective_date: date,
    status: InvoiceStatus = InvoiceStatus.PENDING,
    customer_id: int | None = None,
    correlation_id: str | None = None,
) -> tuple[Invoice, InvoiceEvent]:
    """Insert an invoice and describe it as an ``invoice.created`` event."""
    invoice = Invoice(
        customer_id=customer_id,
        amount=amount,
        status=status.value,
        effective_date=effective_date,
        paid_at=datetime.now(UTC) if status is InvoiceStatus.PAID else None,
    )
    db.add(invoice)
    await db.commit()
    await db.refresh(invoice)

    logger.info("invoice_created", invoice_id=str(invoice.id), status=invoice.status)
    event = InvoiceEvent(
        event_type=InvoiceEventType.CREATED,
        invoice_id=invoice.id,
        invoice=InvoiceSnapshot.from_invoice(invoice),
        correlation_id=correlation_id,
    )
    return invoice, event


async def update_invoice(
    db: AsyncSession,
    invoice_id: uuid.UUID,
    *,
    amount: int | None = None,
    status: InvoiceStatus | None = None,
    effective_date: date | None = None,
    customer_id: int | None = None,
    correlation_id: str | None = None,
) -> tuple[Invoice, InvoiceEvent]:
    """Apply a partial update.

    The event type follows the new status: moving into ``paid`` or ``void``
    emits ``invoice.paid`` / ``invoice.voided``, anything else ``invoice.updated``.
    """
    invoice = await get_invoice(db, invoice_id)
    previous = InvoiceSnapshot.from_invoice(invoice)

    if amount is not None:
        invoice.amount = amount
    if effective_date is not None:
        invoice.effective_date = effective_date
    if customer_id is not None:
        invoice.customer_id = customer_id
    if status is not None and status.value != invoice.status:
        invoice.status = status.value
        invoice.paid_at = datetime.now(UTC) if status is InvoiceStatus.PAID else None

    await db.commit()
    await db.refresh(invoice)

    current = InvoiceSnapshot.from_invoice(invoice)
    event_type = InvoiceEventType.UPDATED
    if current.status is not previous.status:
        event_type = _STATUS_EVENTS.get(current.status, InvoiceEventType.UPDATED)

    logger.info(
        "invoice_updated",
        invoice_id=str(invoice.id),
        event_type=event_type.value,
        previous_status=previous.status.value,
        status=current.status.value,
    )
    event = InvoiceEvent(
        event_type=event_type,
        invoice_id=invoice.id,
        invoice=current,
        previous_invoice=previous,
        correlation_id=correlation_id,
    )
    return invoice, event


async def pay_invoice(
    db: AsyncSession, invoice_id: uuid.UUID, *, correlation_id: str | None = None
) -> tuple[Invoice, InvoiceEvent]:
    return await update_invoice(
        db, invoice_id, status=InvoiceStatus.PAID, correlation_id=correlation_id
    )


async def void_invoice(
    db: AsyncSession, invoice_id: uuid.UUID, *, correlation_id: str | None = None
) -> tuple[Invoice, InvoiceEvent]:
    return await update_invoice(
        db, invoice_id, status=InvoiceStatus.VOID, correlation_id=correlation_id
    )


async def delete_invoice(
    db: AsyncSession, invoice_id: uuid.UUID, *, correlation_id: str | None = None
) -> InvoiceEvent:
    """Delete an invoice; the event carries its last state."""
    invoice = await get_invoice(db, invoice_id)
    snapshot = InvoiceSnapshot.from_invoice(invoice)

    await db.delete(invoice)
    await db.commit()

    logger.info("invoice_deleted", invoice_id=str(invoice_id), status=snapshot.status.value)
    return InvoiceEvent(
        event_type=InvoiceEventType.DELETED,
        invoice_id=invoice_id,
        invoice=snapshot,
        previous_invoice=snapshot,
        correlation_id=correlation_id,
    )
