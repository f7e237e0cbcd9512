"""Revenue aggregation engine: keeps monthly revenue in step with invoices."""

from billing_dashboard.services.revenue.changes import ChangeType, detect_change
from billing_dashboard.services.revenue.orchestrator import (
    EventOutcome,
    OutcomeStatus,
    RevenueEventOrchestrator,
)
from billing_dashboard.services.revenue.periods import derive_period
from billing_dashboard.services.revenue.policy import is_eligible
from billing_dashboard.services.revenue.repository import RevenueRepository
from billing_dashboard.services.revenue.statistics import (
    MonthlyRevenue,
    RecalculationResult,
    RevenueStatistics,
    RevenueStatisticsService,
)
from billing_dashboard.services.revenue.wiring import build_event_dispatcher

__all__ = [
    "ChangeType",
    "EventOutcome",
    "MonthlyRevenue",
    "OutcomeStatus",
    "RecalculationResult",
    "RevenueEventOrchestrator",
    "RevenueRepository",
    "RevenueStatistics",
    "RevenueStatisticsService",
    "build_event_dispatcher",
    "derive_period",
    "detect_change",
    "is_eligible",
]
