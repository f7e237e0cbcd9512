"""Composition root for the revenue engine."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_dashboard.core.config import settings
from billing_dashboard.core.events import InvoiceEventDispatcher, InvoiceEventType
from billing_dashboard.services.revenue.orchestrator import EventOutcome, RevenueEventOrchestrator


def register_revenue_handlers(
    dispatcher: InvoiceEventDispatcher[EventOutcome],
    orchestrator: RevenueEventOrchestrator,
) -> None:
    """Route every invoice lifecycle event to the revenue orchestrator."""
    for event_type in InvoiceEventType:
        dispatcher.register(event_type, orchestrator.handle)


def build_event_dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    conflict_retries: int | None = None,
) -> InvoiceEventDispatcher[EventOutcome]:
    """Create a dispatcher with the revenue orchestrator wired in."""
    orchestrator = RevenueEventOrchestrator(
        session_factory,
        conflict_retries=(
            settings.REVENUE_CONFLICT_RETRIES if conflict_retries is None else conflict_retries
        ),
    )
    dispatcher: InvoiceEventDispatcher[EventOutcome] = InvoiceEventDispatcher()
    register_revenue_handlers(dispatcher, orchestrator)
    return dispatcher
