"""Invoice endpoints.

Each write commits first; the resulting lifecycle event is published to
the revenue engine as a background task once the response is ready.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.api.deps import get_correlation_id, get_event_dispatcher
from billing_dashboard.core.events import InvoiceEventDispatcher
from billing_dashboard.db.session import get_db
from billing_dashboard.models.invoice import InvoiceStatus
from billing_dashboard.services import invoices as invoice_service
from billing_dashboard.services.invoices import InvoiceNotFoundError
from billing_dashboard.services.revenue.orchestrator import EventOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])

Dispatcher = Annotated[InvoiceEventDispatcher[EventOutcome], Depends(get_event_dispatcher)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


class InvoiceResponse(BaseModel):
    """Invoice response schema. Amounts are integer cents."""

    id: uuid.UUID
    customer_id: int | None
    amount: int
    status: InvoiceStatus
    effective_date: date
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InvoiceCreate(BaseModel):
    """Invoice creation schema."""

    amount: int = Field(ge=0, description="Amount in cents")
    effective_date: date
    status: InvoiceStatus = InvoiceStatus.PENDING
    customer_id: int | None = None


class InvoiceUpdate(BaseModel):
    """Partial invoice update; omitted fields stay as they are."""

    amount: int | None = Field(default=None, ge=0, description="Amount in cents")
    effective_date: date | None = None
    status: InvoiceStatus | None = None
    customer_id: int | None = None


def _not_found(invoice_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Invoice {invoice_id} not found",
    )


@router.post("", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    payload: InvoiceCreate,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    correlation_id: CorrelationId,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Create an invoice."""
    invoice, event = await invoice_service.create_invoice(
        db,
        amount=payload.amount,
        effective_date=payload.effective_date,
        status=payload.status,
        customer_id=payload.customer_id,
        correlation_id=correlation_id,
    )
    background_tasks.add_task(dispatcher.publish, event)
    return InvoiceResponse.model_validate(invoice)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> InvoiceResponse:
    """Get a single invoice."""
    try:
        invoice = await invoice_service.get_invoice(db, invoice_id)
    except InvoiceNotFoundError:
        raise _not_found(invoice_id) from None
    return InvoiceResponse.model_validate(invoice)


@router.patch("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdate,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    correlation_id: CorrelationId,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Update amount, date, status or customer of an invoice."""
    try:
        invoice, event = await invoice_service.update_invoice(
            db,
            invoice_id,
            amount=payload.amount,
            effective_date=payload.effective_date,
            status=payload.status,
            customer_id=payload.customer_id,
            correlation_id=correlation_id,
        )
    except InvoiceNotFoundError:
        raise _not_found(invoice_id) from None

    background_tasks.add_task(dispatcher.publish, event)
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/pay", response_model=InvoiceResponse)
async def pay_invoice(
    invoice_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    correlation_id: CorrelationId,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Mark an invoice as paid."""
    try:
        invoice, event = await invoice_service.pay_invoice(
            db, invoice_id, correlation_id=correlation_id
        )
    except InvoiceNotFoundError:
        raise _not_found(invoice_id) from None

    background_tasks.add_task(dispatcher.publish, event)
    return InvoiceResponse.model_validate(invoice)


@router.post("/{invoice_id}/void", response_model=InvoiceResponse)
async def void_invoice(
    invoice_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    correlation_id: CorrelationId,
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Void an invoice."""
    try:
        invoice, event = await invoice_service.void_invoice(
            db, invoice_id, correlation_id=correlation_id
        )
    except InvoiceNotFoundError:
        raise _not_found(invoice_id) from None

    background_tasks.add_task(dispatcher.publish, event)
    return InvoiceResponse.model_validate(invoice)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(
    invoice_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    dispatcher: Dispatcher,
    correlation_id: CorrelationId,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Delete an invoice."""
    try:
        event = await invoice_service.delete_invoice(db, invoice_id, correlation_id=correlation_id)
    except InvoiceNotFoundError:
        raise _not_found(invoice_id) from None

    background_tasks.add_task(dispatcher.publish, event)
