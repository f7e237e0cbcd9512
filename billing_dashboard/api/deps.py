"""Shared router dependencies."""

import structlog
from fastapi import Request

from billing_dashboard.core.events import InvoiceEventDispatcher
from billing_dashboard.services.revenue.orchestrator import EventOutcome


def get_event_dispatcher(request: Request) -> InvoiceEventDispatcher[EventOutcome]:
    """Dispatcher built by the application's composition root."""
    return request.app.state.events


def get_correlation_id() -> str | None:
    """Correlation id bound by the request tracing middleware, if any."""
    return structlog.contextvars.get_contextvars().get("correlation_id")
