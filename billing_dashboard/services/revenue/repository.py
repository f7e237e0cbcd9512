"""Persistence for monthly revenue aggregates and their invoice contributions.

Invariants enforced here:
- ``period`` is the uniqueness key; every aggregate write is a single
  INSERT .. ON CONFLICT (period) DO UPDATE .. RETURNING round-trip.
- ``created_at`` is written once on insert; ``updated_at`` on every write.
- counts and amounts never go below zero, even when a delta would.

Errors: uniqueness races surface as ``RevenueConflictError``, other
constraint failures as ``RevenueValidationError`` and anything else from
the driver as ``RevenueInfrastructureError``. The repository never commits;
the caller owns the transaction.
"""

import uuid
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import Any

import structlog
from sqlalchemy import ColumnElement, Executable, Result, case, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.errors import (
    RevenueConflictError,
    RevenueInfrastructureError,
    RevenueValidationError,
)
from billing_dashboard.db.base import utcnow
from billing_dashboard.models.revenue import (
    CalculationSource,
    InvoiceEventWatermark,
    Revenue,
    RevenueContribution,
)
from billing_dashboard.services.revenue.periods import derive_period, format_period

logger = structlog.get_logger()

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

_revenues = Revenue.__table__.c


def _non_negative(expression: ColumnElement[int]) -> ColumnElement[int]:
    return case((expression < 0, 0), else_=expression)


_UNIQUE_VIOLATION_SQLSTATE = "23505"


def _is_unique_violation(exc: IntegrityError) -> bool:
    """True when the driver reports a unique-key violation.

    asyncpg exposes the SQLSTATE; SQLite only has the message text.
    """
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == _UNIQUE_VIOLATION_SQLSTATE
    return "unique constraint failed" in str(exc.orig).lower()


class RevenueRepository:
    """Data access for ``Revenue`` and ``RevenueContribution`` rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # -- helpers ----------------------------------------------------------

    def _upsert_insert(self, model: type[Any]) -> Any:
        dialect = self.session.get_bind().dialect.name
        insert_fn = _UPSERT_DIALECTS.get(dialect)
        if insert_fn is None:
            raise RevenueInfrastructureError(
                "Database dialect does not support atomic upserts", dialect=dialect
            )
        return insert_fn(model)

    async def _execute(self, statement: Executable, operation: str, **context: Any) -> Result[Any]:
        try:
            return await self.session.execute(statement)
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise RevenueConflictError(
                    "Concurrent write for the same key", operation=operation, **context
                ) from exc
            raise RevenueValidationError(
                "Revenue write violates a constraint", operation=operation, **context
            ) from exc
        except SQLAlchemyError as exc:
            raise RevenueInfrastructureError(
                "Revenue persistence failed", operation=operation, **context
            ) from exc

    @staticmethod
    def _require_period(period: date | None, operation: str) -> date:
        if period is None:
            raise RevenueValidationError("Period is required", operation=operation)
        normalized = derive_period(period)
        if normalized != period:
            raise RevenueValidationError(
                "Period must be the first day of a month",
                operation=operation,
                period=period.isoformat(),
            )
        return normalized

    # -- reads ------------------------------------------------------------

    async def find_by_period(self, period: date) -> Revenue | None:
        """Aggregate for ``period`` or None when the month has none."""
        period = self._require_period(period, "find_by_period")
        result = await self._execute(
            select(Revenue).where(Revenue.period == period).limit(1),
            "find_by_period",
            period=format_period(period),
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, revenue_id: uuid.UUID) -> Revenue | None:
        result = await self._execute(
            select(Revenue).where(Revenue.id == revenue_id), "find_by_id", revenue_id=str(revenue_id)
        )
        return result.scalar_one_or_none()

    async def find_by_date_range(self, start_period: date, end_period: date) -> list[Revenue]:
        """Aggregates with ``start_period <= period <= end_period``, newest first."""
        start_period = self._require_period(start_period, "find_by_date_range")
        end_period = self._require_period(end_period, "find_by_date_range")
        if start_period > end_period:
            raise RevenueValidationError(
                "Start period must not be after end period",
                operation="find_by_date_range",
                start=format_period(start_period),
                end=format_period(end_period),
            )

        result = await self._execute(
            select(Revenue)
            .where(Revenue.period >= start_period, Revenue.period <= end_period)
            .order_by(Revenue.period.desc()),
            "find_by_date_range",
            start=format_period(start_period),
            end=format_period(end_period),
        )
        return list(result.scalars().all())

    # -- aggregate writes -------------------------------------------------

    async def upsert(
        self,
        period: date,
        *,
        invoice_count: int,
        total_amount: int,
        calculation_source: CalculationSource = CalculationSource.INVOICE_EVENT,
        created_at: datetime | None = None,
    ) -> Revenue:
        """Insert or overwrite the aggregate for ``period``.

        On conflict only the counters, the source and ``updated_at`` change;
        ``created_at`` of an existing row is left untouched.
        """
        period = self._require_period(period, "upsert")
        if invoice_count < 0 or total_amount < 0:
            raise RevenueValidationError(
                "Revenue aggregates cannot be negative",
                operation="upsert",
                period=format_period(period),
                invoice_count=invoice_count,
                total_amount=total_amount,
            )

        now = utcnow()
        stmt = self._upsert_insert(Revenue).values(
            [
                {
                    "id": uuid.uuid4(),
                    "period": period,
                    "invoice_count": invoice_count,
                    "total_amount": total_amount,
                    "calculation_source": CalculationSource(calculation_source).value,
                    "created_at": created_at or now,
                    "updated_at": now,
                }
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_revenues.period],
            set_={
                "invoice_count": stmt.excluded.invoice_count,
                "total_amount": stmt.excluded.total_amount,
                "calculation_source": stmt.excluded.calculation_source,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        return await self._returning_revenue(stmt, "upsert", period)

    async def apply_delta(
        self,
        period: date,
        count_delta: int,
        amount_delta: int,
        calculation_source: CalculationSource = CalculationSource.INVOICE_EVENT,
    ) -> Revenue:
        """Atomically add signed deltas to the aggregate for ``period``.

        The arithmetic happens inside the conflict clause, so two writers
        for the same period cannot overwrite each other's increments.
        Results are clamped at zero.
        """
        period = self._require_period(period, "apply_delta")
        now = utcnow()
        stmt = self._upsert_insert(Revenue).values(
            [
                {
                    "id": uuid.uuid4(),
                    "period": period,
                    "invoice_count": max(count_delta, 0),
                    "total_amount": max(amount_delta, 0),
                    "calculation_source": CalculationSource(calculation_source).value,
                    "created_at": now,
                    "updated_at": now,
                }
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_revenues.period],
            set_={
                "invoice_count": _non_negative(_revenues.invoice_count + count_delta),
                "total_amount": _non_negative(_revenues.total_amount + amount_delta),
                "calculation_source": stmt.excluded.calculation_source,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        revenue = await self._returning_revenue(
            stmt, "apply_delta", period, count_delta=count_delta, amount_delta=amount_delta
        )
        logger.debug(
            "revenue_delta_applied",
            period=format_period(period),
            count_delta=count_delta,
            amount_delta=amount_delta,
            invoice_count=revenue.invoice_count,
            total_amount=revenue.total_amount,
        )
        return revenue

    async def _returning_revenue(
        self, stmt: Any, operation: str, period: date, **context: Any
    ) -> Revenue:
        stmt = stmt.returning(Revenue).execution_options(populate_existing=True)
        result = await self._execute(stmt, operation, period=format_period(period), **context)
        revenue = result.scalar_one_or_none()
        if revenue is None:
            raise RevenueInfrastructureError(
                "Upsert returned no row", operation=operation, period=format_period(period)
            )
        return revenue

    async def create(
        self,
        period: date,
        *,
        invoice_count: int,
        total_amount: int,
        calculation_source: CalculationSource = CalculationSource.INVOICE_EVENT,
    ) -> Revenue:
        """Create the aggregate for ``period`` (delegates to ``upsert``)."""
        return await self.upsert(
            period,
            invoice_count=invoice_count,
            total_amount=total_amount,
            calculation_source=calculation_source,
        )

    async def update(
        self,
        revenue_id: uuid.UUID,
        *,
        invoice_count: int,
        total_amount: int,
        calculation_source: CalculationSource = CalculationSource.INVOICE_EVENT,
    ) -> Revenue:
        """Overwrite an existing aggregate by id (delegates to ``upsert``)."""
        existing = await self.find_by_id(revenue_id)
        if existing is None:
            raise RevenueValidationError(
                "Revenue record not found", operation="update", revenue_id=str(revenue_id)
            )
        return await self.upsert(
            existing.period,
            invoice_count=invoice_count,
            total_amount=total_amount,
            calculation_source=calculation_source,
        )

    async def delete(self, revenue_id: uuid.UUID, *, only_if_empty: bool = False) -> bool:
        """Hard-delete an aggregate row.

        With ``only_if_empty`` the row is removed only while its count is
        still zero, so a concurrent increment keeps it alive.
        """
        if revenue_id is None:
            raise RevenueValidationError("Revenue ID is required", operation="delete")

        stmt = delete(Revenue).where(Revenue.id == revenue_id)
        if only_if_empty:
            stmt = stmt.where(Revenue.invoice_count == 0)
        result = await self._execute(
            stmt.execution_options(synchronize_session=False),
            "delete",
            revenue_id=str(revenue_id),
        )
        return bool(result.rowcount)

    # -- contributions ----------------------------------------------------

    async def find_contribution(self, invoice_id: uuid.UUID) -> RevenueContribution | None:
        result = await self._execute(
            select(RevenueContribution)
            .where(RevenueContribution.invoice_id == invoice_id)
            .execution_options(populate_existing=True),
            "find_contribution",
            invoice_id=str(invoice_id),
        )
        return result.scalar_one_or_none()

    async def record_contribution(
        self, invoice_id: uuid.UUID, period: date, amount: int, *, replace: bool = False
    ) -> None:
        """Remember that ``invoice_id`` is counted in ``period`` for ``amount``.

        Without ``replace`` a second record for the same invoice is a conflict.
        """
        period = self._require_period(period, "record_contribution")
        now = utcnow()
        stmt = self._upsert_insert(RevenueContribution).values(
            invoice_id=invoice_id, period=period, amount=amount, created_at=now, updated_at=now
        )
        if replace:
            stmt = stmt.on_conflict_do_update(
                index_elements=[RevenueContribution.__table__.c.invoice_id],
                set_={
                    "period": stmt.excluded.period,
                    "amount": stmt.excluded.amount,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
        await self._execute(
            stmt, "record_contribution", invoice_id=str(invoice_id), period=format_period(period)
        )

    async def remove_contribution(self, invoice_id: uuid.UUID) -> bool:
        result = await self._execute(
            delete(RevenueContribution)
            .where(RevenueContribution.invoice_id == invoice_id)
            .execution_options(synchronize_session=False),
            "remove_contribution",
            invoice_id=str(invoice_id),
        )
        return bool(result.rowcount)

    async def replace_contributions(
        self,
        start_period: date,
        end_period: date,
        contributions: Iterable[tuple[uuid.UUID, date, int]],
    ) -> int:
        """Rebuild the contribution ledger for a period window.

        Drops every contribution inside the window and every prior record
        of the incoming invoices, then inserts ``contributions``.
        """
        rows = [
            {"invoice_id": invoice_id, "period": period, "amount": amount}
            for invoice_id, period, amount in contributions
        ]
        invoice_ids = [row["invoice_id"] for row in rows]

        stale = (RevenueContribution.period >= start_period) & (
            RevenueContribution.period <= end_period
        )
        if invoice_ids:
            stale = stale | RevenueContribution.invoice_id.in_(invoice_ids)
        await self._execute(
            delete(RevenueContribution).where(stale).execution_options(synchronize_session=False),
            "replace_contributions",
            start=format_period(start_period),
            end=format_period(end_period),
        )

        if rows:
            now = utcnow()
            await self._execute(
                self._upsert_insert(RevenueContribution).values(
                    [{**row, "created_at": now, "updated_at": now} for row in rows]
                ),
                "replace_contributions",
                start=format_period(start_period),
                end=format_period(end_period),
            )
        return len(rows)

    async def find_contributions(
        self, invoice_ids: Iterable[uuid.UUID] | None = None, *, window: tuple[date, date] | None = None
    ) -> list[RevenueContribution]:
        """Contributions for ``invoice_ids`` and/or recorded inside ``window``."""
        stmt = select(RevenueContribution)
        if invoice_ids is not None:
            stmt = stmt.where(RevenueContribution.invoice_id.in_(list(invoice_ids)))
        if window is not None:
            stmt = stmt.where(
                RevenueContribution.period >= window[0], RevenueContribution.period <= window[1]
            )
        result = await self._execute(stmt, "find_contributions")
        return list(result.scalars().all())

    # -- event ordering ---------------------------------------------------

    async def find_watermark(self, invoice_id: uuid.UUID) -> datetime | None:
        """When the newest applied event for ``invoice_id`` occurred, if any."""
        result = await self._execute(
            select(InvoiceEventWatermark.last_event_at).where(
                InvoiceEventWatermark.invoice_id == invoice_id
            ),
            "find_watermark",
            invoice_id=str(invoice_id),
        )
        last_event_at = result.scalar_one_or_none()
        # SQLite hands back naive datetimes; every stored value is UTC.
        if last_event_at is not None and last_event_at.tzinfo is None:
            last_event_at = last_event_at.replace(tzinfo=UTC)
        return last_event_at

    async def advance_watermark(
        self, invoice_id: uuid.UUID, occurred_at: datetime, event_id: str
    ) -> None:
        """Move the watermark forward to ``occurred_at``; never backwards."""
        now = utcnow()
        stmt = self._upsert_insert(InvoiceEventWatermark).values(
            invoice_id=invoice_id,
            last_event_at=occurred_at,
            last_event_id=event_id,
            created_at=now,
            updated_at=now,
        )
        watermarks = InvoiceEventWatermark.__table__.c
        stmt = stmt.on_conflict_do_update(
            index_elements=[watermarks.invoice_id],
            set_={
                "last_event_at": stmt.excluded.last_event_at,
                "last_event_id": stmt.excluded.last_event_id,
                "updated_at": stmt.excluded.updated_at,
            },
            where=watermarks.last_event_at <= stmt.excluded.last_event_at,
        )
        await self._execute(stmt, "advance_watermark", invoice_id=str(invoice_id))
