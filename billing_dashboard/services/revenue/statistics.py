"""Rolling 12-month revenue series, summary statistics and recalculation."""

from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.cache import cache_get, cache_set, invalidate_revenue_stats, revenue_stats_key
from billing_dashboard.core.config import settings
from billing_dashboard.core.errors import RevenueConflictError, RevenueInfrastructureError
from billing_dashboard.models.invoice import Invoice
from billing_dashboard.models.revenue import CalculationSource, Revenue
from billing_dashboard.services.revenue.periods import (
    derive_period,
    format_period,
    month_name,
    rolling_window,
    shift_period,
)
from billing_dashboard.services.revenue.policy import REVENUE_ELIGIBILITY
from billing_dashboard.services.revenue.repository import RevenueRepository

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class MonthlyRevenue:
    """One display row of the rolling-year series."""

    period: date
    display_order: int
    year: int
    month_number: int
    month_name: str
    invoice_count: int
    total_amount: int
    calculation_source: str


@dataclass(frozen=True)
class RevenueStatistics:
    """Summary over a rolling year; amounts in cents."""

    average: int
    maximum: int
    minimum: int
    total: int
    months_with_data: int

    @classmethod
    def empty(cls) -> "RevenueStatistics":
        return cls(average=0, maximum=0, minimum=0, total=0, months_with_data=0)


@dataclass(frozen=True)
class RecalculationResult:
    start_period: date
    end_period: date
    invoices_counted: int
    periods_written: int
    periods_cleared: int
    outside_adjustments: int = 0


def build_template(now: date | datetime) -> list[date]:
    """Twelve consecutive periods ending with the month containing ``now``, oldest first."""
    return rolling_window(now)


def merge_with_template(template: list[date], aggregates: list[Revenue]) -> list[MonthlyRevenue]:
    """One row per template slot: the stored aggregate or a zero default.

    Defaults are tagged ``template`` and never persisted.
    """
    by_period = {aggregate.period: aggregate for aggregate in aggregates}
    rows: list[MonthlyRevenue] = []
    for index, period in enumerate(template):
        aggregate = by_period.get(period)
        rows.append(
            MonthlyRevenue(
                period=period,
                display_order=index,
                year=period.year,
                month_number=period.month,
                month_name=month_name(period),
                invoice_count=aggregate.invoice_count if aggregate else 0,
                total_amount=aggregate.total_amount if aggregate else 0,
                calculation_source=(
                    aggregate.calculation_source if aggregate else CalculationSource.TEMPLATE.value
                ),
            )
        )
    return rows


def summarize(rows: list[MonthlyRevenue]) -> RevenueStatistics:
    """Min/max/average over months with revenue; total over every month.

    The average is rounded half up to whole cents.
    """
    values = [row.total_amount for row in rows if row.total_amount > 0]
    if not values:
        return RevenueStatistics.empty()

    total = sum(row.total_amount for row in rows)
    count = len(values)
    return RevenueStatistics(
        average=(2 * sum(values) + count) // (2 * count),
        maximum=max(values),
        minimum=min(values),
        total=total,
        months_with_data=count,
    )


class RevenueStatisticsService:
    """Read side of the revenue engine plus its self-healing recalculation."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        *,
        conflict_retries: int | None = None,
    ) -> None:
        self.session = session
        self.repository = RevenueRepository(session)
        self.clock = clock or _utc_now
        self.conflict_retries = max(
            settings.REVENUE_CONFLICT_RETRIES if conflict_retries is None else conflict_retries, 0
        )

    async def calculate_for_rolling_year(self) -> list[MonthlyRevenue]:
        """Exactly twelve rows, oldest first, with zero rows for empty months."""
        template = build_template(self.clock())
        aggregates = await self.repository.find_by_date_range(template[0], template[-1])
        rows = merge_with_template(template, aggregates)

        logger.debug(
            "rolling_year_calculated",
            start=format_period(template[0]),
            end=format_period(template[-1]),
            stored_months=len(aggregates),
        )
        return rows

    async def calculate_statistics(self) -> RevenueStatistics:
        """Summary statistics for the rolling year, served from cache when fresh."""
        key = revenue_stats_key(format_period(derive_period(self.clock())))
        cached = await cache_get(key)
        if cached is not None:
            return RevenueStatistics(**cached)

        statistics = summarize(await self.calculate_for_rolling_year())
        await cache_set(key, asdict(statistics), ttl=settings.REVENUE_STATS_CACHE_TTL)
        return statistics

    async def recalculate_for_year(self) -> RecalculationResult:
        """Rebuild aggregates and contributions for the rolling window from invoices.

        Produces the same counts and totals that applying every invoice event
        in order would have produced. A lost uniqueness race against a
        concurrent event rolls back and starts over, up to
        ``conflict_retries`` times. Commits before invalidating the cache.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._rebuild_window()
            except RevenueConflictError as exc:
                await self.session.rollback()
                if attempt > self.conflict_retries:
                    raise
                logger.warning("revenue_recalculation_retrying", attempt=attempt, error=str(exc))
                continue

            await invalidate_revenue_stats()
            return result

    async def _scan(self, *criteria: Any) -> list[Any]:
        eligible_statuses = [status.value for status, ok in REVENUE_ELIGIBILITY.items() if ok]
        try:
            result = await self.session.execute(
                select(Invoice.id, Invoice.amount, Invoice.effective_date).where(
                    Invoice.status.in_(eligible_statuses), *criteria
                )
            )
        except SQLAlchemyError as exc:
            raise RevenueInfrastructureError(
                "Failed to scan invoices", operation="recalculate_for_year"
            ) from exc
        return list(result.all())

    async def _rebuild_window(self) -> RecalculationResult:
        template = build_template(self.clock())
        start, end = template[0], template[-1]
        log = logger.bind(start=format_period(start), end=format_period(end))
        log.info("revenue_recalculation_started")

        window_end = shift_period(end, 1) - timedelta(days=1)
        invoices = await self._scan(
            Invoice.effective_date >= start, Invoice.effective_date <= window_end
        )

        totals: dict[date, tuple[int, int]] = {}
        contributions = []
        for invoice_id, amount, effective_date in invoices:
            period = derive_period(effective_date)
            count, amount_sum = totals.get(period, (0, 0))
            totals[period] = (count + 1, amount_sum + amount)
            contributions.append((invoice_id, period, amount))

        # Invoices that crossed the window edge since they were last counted
        # still weigh on a period outside the window.
        counted_ids = {invoice_id for invoice_id, _, _ in contributions}
        moved_in = []
        if counted_ids:
            moved_in = [
                (c.period, c.amount)
                for c in await self.repository.find_contributions(counted_ids)
                if not start <= c.period <= end
            ]
        departed_ids = [
            c.invoice_id
            for c in await self.repository.find_contributions(window=(start, end))
            if c.invoice_id not in counted_ids
        ]
        moved_out = await self._scan(Invoice.id.in_(departed_ids)) if departed_ids else []

        await self.repository.replace_contributions(start, end, contributions)

        adjusted: set[date] = set()
        for period, amount in moved_in:
            revenue = await self.repository.apply_delta(
                period, -1, -amount, CalculationSource.BULK_RECALCULATION
            )
            if revenue.invoice_count == 0:
                await self.repository.delete(revenue.id, only_if_empty=True)
            adjusted.add(period)
        for invoice_id, amount, effective_date in moved_out:
            period = derive_period(effective_date)
            await self.repository.apply_delta(
                period, 1, amount, CalculationSource.BULK_RECALCULATION
            )
            await self.repository.record_contribution(invoice_id, period, amount, replace=True)
            adjusted.add(period)

        written = cleared = 0
        for period in template:
            if period in totals:
                count, amount_sum = totals[period]
                await self.repository.upsert(
                    period,
                    invoice_count=count,
                    total_amount=amount_sum,
                    calculation_source=CalculationSource.BULK_RECALCULATION,
                )
                written += 1
                continue

            stale = await self.repository.find_by_period(period)
            if stale is not None and await self.repository.delete(stale.id):
                cleared += 1

        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            raise RevenueInfrastructureError(
                "Failed to commit recalculation", operation="recalculate_for_year"
            ) from exc

        log.info(
            "revenue_recalculation_completed",
            invoices_counted=len(contributions),
            periods_written=written,
            periods_cleared=cleared,
            outside_adjustments=len(adjusted),
        )
        return RecalculationResult(
            start_period=start,
            end_period=end,
            invoices_counted=len(contributions),
            periods_written=written,
            periods_cleared=cleared,
            outside_adjustments=len(adjusted),
        )
