"""Monthly revenue endpoints for the billing dashboard."""

import uuid
from datetime import date, datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.errors import RevenueError, RevenueValidationError
from billing_dashboard.db.session import get_db
from billing_dashboard.services.revenue.periods import format_period, parse_period
from billing_dashboard.services.revenue.repository import RevenueRepository
from billing_dashboard.services.revenue.statistics import RevenueStatisticsService

router = APIRouter(prefix="/revenues", tags=["revenues"])
logger = structlog.get_logger()

_RECALCULATION_ERROR_STATUS = {
    "conflict": status.HTTP_409_CONFLICT,
    "infrastructure": status.HTTP_503_SERVICE_UNAVAILABLE,
}


class RevenueResponse(BaseModel):
    """Stored monthly aggregate."""

    id: uuid.UUID
    period: date
    invoice_count: int
    total_amount: int
    calculation_source: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MonthlyRevenueResponse(BaseModel):
    """One row of the rolling-year series; empty months are zero rows."""

    period: str
    display_order: int
    year: int
    month_number: int
    month_name: str
    invoice_count: int
    total_amount: int
    calculation_source: str


class RevenueStatisticsResponse(BaseModel):
    """Rolling-year summary. Amounts are integer cents."""

    average: int
    maximum: int
    minimum: int
    total: int
    months_with_data: int

    model_config = {"from_attributes": True}


class RecalculationResponse(BaseModel):
    """Result of rebuilding the rolling window from invoices."""

    start_period: str
    end_period: str
    invoices_counted: int
    periods_written: int
    periods_cleared: int
    outside_adjustments: int


@router.get("", response_model=list[RevenueResponse])
async def list_revenues(
    db: AsyncSession = Depends(get_db),
    start: str = Query(..., description="First period, YYYY-MM"),
    end: str = Query(..., description="Last period, YYYY-MM"),
) -> list[RevenueResponse]:
    """Stored aggregates between two periods (inclusive), newest first."""
    try:
        revenues = await RevenueRepository(db).find_by_date_range(
            parse_period(start), parse_period(end)
        )
    except RevenueValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    return [RevenueResponse.model_validate(revenue) for revenue in revenues]


@router.get("/rolling-year", response_model=list[MonthlyRevenueResponse])
async def get_rolling_year(db: AsyncSession = Depends(get_db)) -> list[MonthlyRevenueResponse]:
    """Twelve months ending with the current one, oldest first."""
    rows = await RevenueStatisticsService(db).calculate_for_rolling_year()
    return [
        MonthlyRevenueResponse(
            period=format_period(row.period),
            display_order=row.display_order,
            year=row.year,
            month_number=row.month_number,
            month_name=row.month_name,
            invoice_count=row.invoice_count,
            total_amount=row.total_amount,
            calculation_source=row.calculation_source,
        )
        for row in rows
    ]


@router.get("/statistics", response_model=RevenueStatisticsResponse)
async def get_statistics(db: AsyncSession = Depends(get_db)) -> RevenueStatisticsResponse:
    """Average, maximum and minimum over months with revenue, plus the total."""
    statistics = await RevenueStatisticsService(db).calculate_statistics()
    return RevenueStatisticsResponse.model_validate(statistics)


@router.post("/recalculate", response_model=RecalculationResponse)
async def recalculate(db: AsyncSession = Depends(get_db)) -> RecalculationResponse:
    """Rebuild the rolling window's aggregates from invoice data."""
    try:
        result = await RevenueStatisticsService(db).recalculate_for_year()
    except RevenueError as e:
        logger.error(
            "revenue_recalculation_failed", error_kind=e.kind, error=str(e), **e.context
        )
        raise HTTPException(
            status_code=_RECALCULATION_ERROR_STATUS.get(
                e.kind, status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            detail=f"Recalculation failed ({e.kind})",
        ) from e

    return RecalculationResponse(
        start_period=format_period(result.start_period),
        end_period=format_period(result.end_period),
        invoices_counted=result.invoices_counted,
        periods_written=result.periods_written,
        periods_cleared=result.periods_cleared,
        outside_adjustments=result.outside_adjustments,
    )
