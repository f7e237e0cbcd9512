"""Invoice lifecycle events and the dispatcher that routes them.

Handlers are registered explicitly by a composition root; nothing
subscribes itself on construction.
"""

import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from enum import Enum
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

from billing_dashboard.models.invoice import Invoice, InvoiceStatus

logger = structlog.get_logger()

R = TypeVar("R")


class InvoiceEventType(str, Enum):
    """Invoice lifecycle event types."""

    CREATED = "invoice.created"
    UPDATED = "invoice.updated"
    PAID = "invoice.paid"
    VOIDED = "invoice.voided"
    DELETED = "invoice.deleted"


class InvoiceSnapshot(BaseModel):
    """Read-only view of an invoice at one point in time."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    amount: int = Field(ge=0, description="Amount in cents")
    status: InvoiceStatus
    effective_date: date

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "InvoiceSnapshot":
        """Capture the current state of an ORM invoice."""
        return cls(
            id=invoice.id,
            amount=invoice.amount,
            status=InvoiceStatus(invoice.status),
            effective_date=invoice.effective_date,
        )


class InvoiceEvent(BaseModel):
    """An invoice write that already committed.

    ``invoice`` is the state after the write (for deletions: the deleted
    invoice). ``previous_invoice`` is the state before it, when known.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1, max_length=64)
    event_type: InvoiceEventType
    invoice_id: uuid.UUID
    invoice: InvoiceSnapshot
    previous_invoice: InvoiceSnapshot | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None

    @model_validator(mode="after")
    def check_invoice_ids(self) -> "InvoiceEvent":
        """Snapshots must describe the invoice the event is about."""
        if self.invoice.id != self.invoice_id:
            raise ValueError("invoice.id does not match invoice_id")
        if self.previous_invoice is not None and self.previous_invoice.id != self.invoice_id:
            raise ValueError("previous_invoice.id does not match invoice_id")
        return self


EventHandler = Callable[[InvoiceEvent], Awaitable[R]]


class InvoiceEventDispatcher(Generic[R]):
    """Routes invoice events to the handlers registered for their type."""

    def __init__(self) -> None:
        self._handlers: dict[InvoiceEventType, list[EventHandler[R]]] = defaultdict(list)

    def register(self, event_type: InvoiceEventType, handler: EventHandler[R]) -> None:
        """Register ``handler`` for ``event_type``. Order of registration is call order."""
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: InvoiceEventType) -> list[EventHandler[R]]:
        return list(self._handlers.get(event_type, ()))

    async def publish(self, event: InvoiceEvent) -> list[R]:
        """Deliver ``event`` to each registered handler in turn."""
        handlers = self.handlers_for(event.event_type)
        if not handlers:
            logger.debug("event_without_handlers", event_type=event.event_type.value)
            return []

        return [await handler(event) for handler in handlers]
