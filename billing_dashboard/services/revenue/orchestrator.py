"""Turns invoice lifecycle events into revenue aggregate updates.

Per event: validate snapshots → derive period → load the recorded
contribution and the existing aggregate → detect the change → run the
mutation handler → apply the delta (and delete emptied rows), all inside
one transaction.

Events older than the newest one already applied for the same invoice
are reported as ``STALE`` and change nothing.

``handle`` never raises. The invoice write that produced the event has
already committed, so a failed aggregate update is logged and reported as
a ``SUPPRESSED`` outcome; drift is repaired by the rolling-year
recalculation.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_dashboard.core.cache import invalidate_revenue_stats
from billing_dashboard.core.errors import RevenueError, RevenueValidationError
from billing_dashboard.core.events import InvoiceEvent, InvoiceEventType, InvoiceSnapshot
from billing_dashboard.models.invoice import InvoiceStatus
from billing_dashboard.models.revenue import CalculationSource, RevenueContribution
from billing_dashboard.services.revenue.changes import ChangeType, detect_change
from billing_dashboard.services.revenue.handlers import (
    RevenueMutation,
    compute_mutation,
    handle_deletion,
)
from billing_dashboard.services.revenue.periods import derive_period, format_period
from billing_dashboard.services.revenue.policy import is_eligible
from billing_dashboard.services.revenue.repository import RevenueRepository

logger = structlog.get_logger()

_EVENTS_WITH_PREVIOUS = frozenset(
    {InvoiceEventType.UPDATED, InvoiceEventType.PAID, InvoiceEventType.VOIDED}
)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class EventOutcome:
    """What happened to one event. ``SUPPRESSED`` means an error was swallowed."""

    event_id: str
    event_type: str | None
    status: OutcomeStatus
    change_type: ChangeType | None = None
    periods: tuple[str, ...] = ()
    error_kind: str | None = None
    detail: str | None = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status is not OutcomeStatus.SUPPRESSED


@dataclass(frozen=True)
class _Step:
    """One period-level mutation derived from an event."""

    period: date
    change: ChangeType
    previous: InvoiceSnapshot | None
    current: InvoiceSnapshot | None


@dataclass
class _Plan:
    change: ChangeType
    steps: list[_Step] = field(default_factory=list)


class KeyedLocks:
    """asyncio locks created on demand per key and dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[Any, asyncio.Lock] = {}
        self._waiters: dict[Any, int] = {}

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RevenueEventOrchestrator:
    """Single error boundary between invoice events and revenue aggregates."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        conflict_retries: int = 2,
    ) -> None:
        self.session_factory = session_factory
        self.conflict_retries = max(conflict_retries, 0)
        self._invoice_locks = KeyedLocks()
        self._period_locks = KeyedLocks()

    async def handle(self, event: InvoiceEvent | Mapping[str, Any]) -> EventOutcome:
        """Process one event to completion; never raises."""
        try:
            event = self._coerce(event)
        except RevenueValidationError as exc:
            raw_id = event.get("event_id") if isinstance(event, Mapping) else None
            return self._suppressed(str(raw_id or "unknown"), None, exc, attempts=1)

        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type.value,
            invoice_id=str(event.invoice_id),
            correlation_id=event.correlation_id,
        )
        log.info("revenue_event_received")

        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await self._process(event, attempt)
            except RevenueError as exc:
                if exc.retryable and attempt <= self.conflict_retries:
                    log.warning("revenue_event_retrying", attempt=attempt, error_kind=exc.kind)
                    continue
                return self._suppressed(event.event_id, event.event_type, exc, attempts=attempt)
            except Exception as exc:
                return self._suppressed(event.event_id, event.event_type, exc, attempts=attempt)
            break

        if outcome.status is OutcomeStatus.APPLIED:
            await invalidate_revenue_stats()
        log.info(
            "revenue_event_processed",
            status=outcome.status.value,
            change_type=outcome.change_type.value if outcome.change_type else None,
            periods=list(outcome.periods),
        )
        return outcome

    # -- validation -------------------------------------------------------

    @staticmethod
    def _coerce(event: InvoiceEvent | Mapping[str, Any]) -> InvoiceEvent:
        if isinstance(event, InvoiceEvent):
            return event
        try:
            return InvoiceEvent.model_validate(dict(event))
        except ValidationError as exc:
            raise RevenueValidationError(
                "Malformed invoice event", errors=exc.error_count()
            ) from exc

    @staticmethod
    def _snapshots(
        event: InvoiceEvent,
    ) -> tuple[InvoiceSnapshot | None, InvoiceSnapshot | None]:
        """(previous, current) as seen by the change detector."""
        if event.event_type is InvoiceEventType.CREATED:
            return None, event.invoice
        if event.event_type is InvoiceEventType.DELETED:
            return event.invoice, None
        if event.event_type in _EVENTS_WITH_PREVIOUS and event.previous_invoice is None:
            raise RevenueValidationError(
                "previous_invoice is required for this event type",
                event_type=event.event_type.value,
            )
        return event.previous_invoice, event.invoice

    # -- planning ---------------------------------------------------------

    @staticmethod
    def _plan(
        previous: InvoiceSnapshot | None,
        current: InvoiceSnapshot | None,
        recorded: RevenueContribution | None,
    ) -> _Plan:
        """Reconcile the detected change with what is already counted.

        The contribution ledger decides what is really outstanding, which
        makes redelivered events no-ops and reverses exactly what was
        recorded even when the event's previous snapshot is stale.
        """
        change = detect_change(previous, current)
        plan = _Plan(change)
        wanted = current if current is not None and is_eligible(current.status) else None

        if recorded is None and wanted is None:
            return plan

        if recorded is not None:
            counted = InvoiceSnapshot(
                id=recorded.invoice_id,
                amount=recorded.amount,
                status=(
                    previous.status
                    if previous is not None and is_eligible(previous.status)
                    else InvoiceStatus.PAID
                ),
                effective_date=recorded.period,
            )
            if wanted is None:
                plan.steps.append(
                    _Step(recorded.period, ChangeType.ELIGIBLE_TO_INELIGIBLE, counted, current)
                )
                return plan

            wanted_period = derive_period(wanted.effective_date)
            if wanted_period != recorded.period:
                plan.steps.append(
                    _Step(recorded.period, ChangeType.ELIGIBLE_TO_INELIGIBLE, counted, None)
                )
                plan.steps.append(
                    _Step(wanted_period, ChangeType.INELIGIBLE_TO_ELIGIBLE, None, wanted)
                )
            elif recorded.amount != wanted.amount:
                plan.steps.append(
                    _Step(wanted_period, ChangeType.ELIGIBLE_AMOUNT_CHANGED, counted, wanted)
                )
            return plan

        plan.steps.append(
            _Step(
                derive_period(wanted.effective_date),  # type: ignore[union-attr]
                ChangeType.INELIGIBLE_TO_ELIGIBLE,
                None,
                wanted,
            )
        )
        return plan

    # -- execution --------------------------------------------------------

    async def _process(self, event: InvoiceEvent, attempt: int) -> EventOutcome:
        previous, current = self._snapshots(event)
        touched = {
            derive_period(snapshot.effective_date)
            for snapshot in (previous, current)
            if snapshot is not None
        }

        # Period locks are released only after the transaction has committed.
        async with self._invoice_locks.hold(event.invoice_id), AsyncExitStack() as period_locks:
            async with self.session_factory() as session, session.begin():
                repository = RevenueRepository(session)
                occurred_at = _as_utc(event.occurred_at)
                watermark = await repository.find_watermark(event.invoice_id)
                if watermark is not None and occurred_at < watermark:
                    logger.info(
                        "revenue_event_stale",
                        event_id=event.event_id,
                        occurred_at=occurred_at.isoformat(),
                        watermark=watermark.isoformat(),
                    )
                    return EventOutcome(
                        event.event_id, event.event_type.value, OutcomeStatus.STALE, attempts=attempt
                    )

                recorded = await repository.find_contribution(event.invoice_id)
                if recorded is not None:
                    touched.add(recorded.period)

                plan = self._plan(previous, current, recorded)
                periods = tuple(format_period(p) for p in sorted({s.period for s in plan.steps}))

                await repository.advance_watermark(event.invoice_id, occurred_at, event.event_id)

                if not plan.steps:
                    status = (
                        OutcomeStatus.NO_CHANGE
                        if plan.change is ChangeType.NONE
                        else OutcomeStatus.DUPLICATE
                    )
                    return EventOutcome(
                        event.event_id,
                        event.event_type.value,
                        status,
                        change_type=plan.change,
                        attempts=attempt,
                    )

                for period in sorted(touched):
                    await period_locks.enter_async_context(self._period_locks.hold(period))
                for step in plan.steps:
                    await self._apply_step(repository, event, step)

        return EventOutcome(
            event.event_id,
            event.event_type.value,
            OutcomeStatus.APPLIED,
            change_type=plan.change,
            periods=periods,
            attempts=attempt,
        )

    async def _apply_step(
        self, repository: RevenueRepository, event: InvoiceEvent, step: _Step
    ) -> None:
        label = format_period(step.period)
        try:
            existing = await repository.find_by_period(step.period)
            if event.event_type is InvoiceEventType.DELETED and step.current is None:
                mutation = handle_deletion(existing, step.previous)  # type: ignore[arg-type]
            else:
                mutation = compute_mutation(existing, step.previous, step.current, step.change)

            await self._write(repository, step.period, mutation)
            await self._record(repository, event.invoice_id, step)
        except RevenueError as exc:
            raise exc.with_context(
                period=label, change_type=step.change.value, invoice_id=str(event.invoice_id)
            )

        logger.debug(
            "revenue_step_applied",
            event_id=event.event_id,
            period=label,
            change_type=step.change.value,
            action=mutation.action.value,
            projected_invoice_count=mutation.invoice_count,
            projected_total_amount=mutation.total_amount,
        )

    @staticmethod
    async def _write(repository: RevenueRepository, period: date, mutation: RevenueMutation) -> None:
        if mutation.is_noop:
            return

        revenue = await repository.apply_delta(
            period,
            mutation.count_delta,
            mutation.amount_delta,
            CalculationSource.INVOICE_EVENT,
        )
        if mutation.removes_when_empty and revenue.invoice_count == 0:
            await repository.delete(revenue.id, only_if_empty=True)

    @staticmethod
    async def _record(repository: RevenueRepository, invoice_id: uuid.UUID, step: _Step) -> None:
        if step.change is ChangeType.ELIGIBLE_TO_INELIGIBLE:
            await repository.remove_contribution(invoice_id)
        elif step.current is not None:
            await repository.record_contribution(
                invoice_id,
                step.period,
                step.current.amount,
                replace=step.change is ChangeType.ELIGIBLE_AMOUNT_CHANGED,
            )

    # -- outcomes ---------------------------------------------------------

    @staticmethod
    def _suppressed(
        event_id: str,
        event_type: InvoiceEventType | None,
        exc: Exception,
        *,
        attempts: int,
    ) -> EventOutcome:
        kind = exc.kind if isinstance(exc, RevenueError) else "unexpected"
        context = exc.context if isinstance(exc, RevenueError) else {}
        logger.error(
            "revenue_event_failed",
            event_id=event_id,
            event_type=event_type.value if event_type else None,
            error_kind=kind,
            error=str(exc),
            attempts=attempts,
            **{f"ctx_{key}": value for key, value in context.items()},
            exc_info=exc,
        )
        return EventOutcome(
            event_id,
            event_type.value if event_type else None,
            OutcomeStatus.SUPPRESSED,
            error_kind=kind,
            detail=str(exc),
            attempts=attempts,
        )
