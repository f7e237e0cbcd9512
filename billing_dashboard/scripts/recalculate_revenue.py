"""Rebuild monthly revenue for the rolling year from invoice data.

Repairs any drift left behind by suppressed invoice events. Safe to run
repeatedly: the result depends only on the invoices in the window.

Usage:
    python -m billing_dashboard.scripts.recalculate_revenue
"""

import asyncio
import sys

from billing_dashboard.core.errors import RevenueError
from billing_dashboard.db.session import AsyncSessionLocal, engine
from billing_dashboard.services.revenue.periods import format_period
from billing_dashboard.services.revenue.statistics import (
    RecalculationResult,
    RevenueStatisticsService,
)


async def recalculate() -> RecalculationResult:
    """Run one recalculation in its own session."""
    async with AsyncSessionLocal() as session:
        return await RevenueStatisticsService(session).recalculate_for_year()


async def main() -> int:
    print("=" * 50)
    print("Revenue recalculation")
    print("=" * 50)

    try:
        result = await recalculate()
    except RevenueError as e:
        print(f"Recalculation failed [{e.kind}]: {e}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()

    print(f"  window:           {format_period(result.start_period)} .. {format_period(result.end_period)}")
    print(f"  invoices counted: {result.invoices_counted}")
    print(f"  periods written:  {result.periods_written}")
    print(f"  periods cleared:  {result.periods_cleared}")
    print(f"  outside window:   {result.outside_adjustments} period(s) adjusted")
    print("=" * 50)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
