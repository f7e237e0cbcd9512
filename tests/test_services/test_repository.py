"""Tests for RevenueRepository against SQLite."""

import uuid
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.core.errors import (
    RevenueConflictError,
    RevenueInfrastructureError,
    RevenueValidationError,
)
from billing_dashboard.models import CalculationSource, Revenue, RevenueContribution
from billing_dashboard.services.revenue.repository import RevenueRepository

MARCH = date(2026, 3, 1)
APRIL = date(2026, 4, 1)
MAY = date(2026, 5, 1)


async def _row_count(session: AsyncSession) -> int:
    return (await session.execute(select(func.count()).select_from(Revenue))).scalar_one()


class TestUpsert:
    """Insert-or-update keyed on period."""

    @pytest.mark.asyncio
    async def test_insert_then_overwrite(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)

        first = await repo.upsert(MARCH, invoice_count=1, total_amount=10_000)
        revenue_id, created_at = first.id, first.created_at
        second = await repo.upsert(
            MARCH,
            invoice_count=3,
            total_amount=45_000,
            calculation_source=CalculationSource.BULK_RECALCULATION,
        )
        await test_session.commit()

        assert second.id == revenue_id
        assert second.created_at == created_at
        assert second.updated_at >= created_at
        assert (second.invoice_count, second.total_amount) == (3, 45_000)
        assert second.calculation_source == "bulk_recalculation"
        assert await _row_count(test_session) == 1

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, test_session: AsyncSession) -> None:
        """Repeating the same upsert leaves one row with the same values."""
        repo = RevenueRepository(test_session)

        for _ in range(3):
            await repo.upsert(MARCH, invoice_count=2, total_amount=20_000)
        await test_session.commit()

        stored = await repo.find_by_period(MARCH)
        assert stored is not None
        assert (stored.invoice_count, stored.total_amount) == (2, 20_000)
        assert await _row_count(test_session) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("count", "amount"), [(-1, 0), (0, -5)])
    async def test_negative_values_rejected(
        self, test_session: AsyncSession, count: int, amount: int
    ) -> None:
        with pytest.raises(RevenueValidationError):
            await RevenueRepository(test_session).upsert(
                MARCH, invoice_count=count, total_amount=amount
            )

    @pytest.mark.asyncio
    async def test_period_must_be_first_of_month(self, test_session: AsyncSession) -> None:
        with pytest.raises(RevenueValidationError) as exc_info:
            await RevenueRepository(test_session).upsert(
                date(2026, 3, 15), invoice_count=1, total_amount=1
            )

        assert exc_info.value.context["operation"] == "upsert"

    @pytest.mark.asyncio
    async def test_period_is_required(self, test_session: AsyncSession) -> None:
        with pytest.raises(RevenueValidationError):
            await RevenueRepository(test_session).upsert(
                None, invoice_count=1, total_amount=1  # type: ignore[arg-type]
            )

    @pytest.mark.asyncio
    async def test_create_and_update_delegate_to_upsert(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)

        created = await repo.create(APRIL, invoice_count=1, total_amount=500)
        updated = await repo.update(created.id, invoice_count=2, total_amount=900)

        assert updated.id == created.id
        assert (updated.invoice_count, updated.total_amount) == (2, 900)

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, test_session: AsyncSession) -> None:
        with pytest.raises(RevenueValidationError):
            await RevenueRepository(test_session).update(
                uuid.uuid4(), invoice_count=1, total_amount=1
            )


class TestApplyDelta:
    """Atomic signed deltas."""

    @pytest.mark.asyncio
    async def test_creates_missing_row(self, test_session: AsyncSession) -> None:
        revenue = await RevenueRepository(test_session).apply_delta(MARCH, 1, 10_000)

        assert (revenue.invoice_count, revenue.total_amount) == (1, 10_000)
        assert revenue.calculation_source == "invoice_event"

    @pytest.mark.asyncio
    async def test_accumulates(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)

        await repo.apply_delta(MARCH, 1, 10_000)
        await repo.apply_delta(MARCH, 1, 5_000)
        revenue = await repo.apply_delta(MARCH, 0, -2_000)

        assert (revenue.invoice_count, revenue.total_amount) == (2, 13_000)

    @pytest.mark.asyncio
    async def test_clamps_at_zero(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)

        await repo.apply_delta(MARCH, 1, 1_000)
        revenue = await repo.apply_delta(MARCH, -5, -99_000)

        assert (revenue.invoice_count, revenue.total_amount) == (0, 0)

    @pytest.mark.asyncio
    async def test_negative_delta_on_missing_row_stores_zero(
        self, test_session: AsyncSession
    ) -> None:
        revenue = await RevenueRepository(test_session).apply_delta(MARCH, -1, -1_000)

        assert (revenue.invoice_count, revenue.total_amount) == (0, 0)


class TestReadsAndDelete:
    @pytest.mark.asyncio
    async def test_find_by_period_missing(self, test_session: AsyncSession) -> None:
        assert await RevenueRepository(test_session).find_by_period(MARCH) is None

    @pytest.mark.asyncio
    async def test_find_by_date_range_newest_first(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        for period in (MARCH, APRIL, MAY):
            await repo.upsert(period, invoice_count=1, total_amount=100)

        revenues = await repo.find_by_date_range(MARCH, APRIL)

        assert [r.period for r in revenues] == [APRIL, MARCH]

    @pytest.mark.asyncio
    async def test_find_by_date_range_rejects_reversed_bounds(
        self, test_session: AsyncSession
    ) -> None:
        with pytest.raises(RevenueValidationError):
            await RevenueRepository(test_session).find_by_date_range(MAY, MARCH)

    @pytest.mark.asyncio
    async def test_delete(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        revenue = await repo.upsert(MARCH, invoice_count=1, total_amount=100)

        assert await repo.delete(revenue.id) is True
        assert await repo.delete(revenue.id) is False

    @pytest.mark.asyncio
    async def test_guarded_delete_keeps_non_empty_rows(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        revenue = await repo.upsert(MARCH, invoice_count=1, total_amount=100)

        assert await repo.delete(revenue.id, only_if_empty=True) is False
        await repo.apply_delta(MARCH, -1, -100)
        assert await repo.delete(revenue.id, only_if_empty=True) is True


class TestContributions:
    """The per-invoice ledger."""

    @pytest.mark.asyncio
    async def test_record_find_remove(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        invoice_id = uuid.uuid4()

        await repo.record_contribution(invoice_id, MARCH, 10_000)
        recorded = await repo.find_contribution(invoice_id)

        assert recorded is not None
        assert (recorded.period, recorded.amount) == (MARCH, 10_000)
        assert await repo.remove_contribution(invoice_id) is True
        assert await repo.find_contribution(invoice_id) is None

    @pytest.mark.asyncio
    async def test_replace_updates_existing(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        invoice_id = uuid.uuid4()

        await repo.record_contribution(invoice_id, MARCH, 10_000)
        await repo.record_contribution(invoice_id, MARCH, 12_500, replace=True)

        recorded = await repo.find_contribution(invoice_id)
        assert recorded is not None
        assert recorded.amount == 12_500

    @pytest.mark.asyncio
    async def test_second_record_is_a_conflict(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        invoice_id = uuid.uuid4()
        await repo.record_contribution(invoice_id, MARCH, 10_000)

        with pytest.raises(RevenueConflictError) as exc_info:
            await repo.record_contribution(invoice_id, MARCH, 10_000)

        assert exc_info.value.retryable
        assert exc_info.value.context["operation"] == "record_contribution"

    @pytest.mark.asyncio
    async def test_replace_contributions_rebuilds_window(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        stale, moved, outside = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        await repo.record_contribution(stale, MARCH, 1)
        await repo.record_contribution(moved, date(2025, 1, 1), 2)
        await repo.record_contribution(outside, date(2025, 2, 1), 3)

        written = await repo.replace_contributions(MARCH, MAY, [(moved, APRIL, 20)])

        assert written == 1
        assert await repo.find_contribution(stale) is None
        moved_row = await repo.find_contribution(moved)
        assert moved_row is not None
        assert (moved_row.period, moved_row.amount) == (APRIL, 20)
        assert await repo.find_contribution(outside) is not None
        total = await test_session.execute(select(func.count()).select_from(RevenueContribution))
        assert total.scalar_one() == 2


class TestWatermarks:
    """Per-invoice event ordering."""

    @pytest.mark.asyncio
    async def test_missing_watermark(self, test_session: AsyncSession) -> None:
        assert await RevenueRepository(test_session).find_watermark(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_watermark_only_moves_forward(self, test_session: AsyncSession) -> None:
        repo = RevenueRepository(test_session)
        invoice_id = uuid.uuid4()
        later = datetime(2026, 3, 15, 10, 0, tzinfo=UTC)

        await repo.advance_watermark(invoice_id, later, "evt-2")
        await repo.advance_watermark(invoice_id, later - timedelta(minutes=1), "evt-1")

        assert await repo.find_watermark(invoice_id) == later

        await repo.advance_watermark(invoice_id, later + timedelta(seconds=1), "evt-3")

        assert await repo.find_watermark(invoice_id) == later + timedelta(seconds=1)


class _DriverError(Exception):
    """Driver exception carrying a SQLSTATE, as asyncpg raises them."""

    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class TestErrorConversion:
    """Driver errors become revenue errors of the right kind."""

    @staticmethod
    def _failing_session(exc: Exception) -> MagicMock:
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "sqlite"
        session.execute = AsyncMock(side_effect=exc)
        return session

    @pytest.mark.asyncio
    async def test_unique_violation_becomes_conflict(self) -> None:
        exc = IntegrityError("INSERT ...", {}, _DriverError("duplicate key value", sqlstate="23505"))
        repo = RevenueRepository(self._failing_session(exc))

        with pytest.raises(RevenueConflictError) as exc_info:
            await repo.apply_delta(MARCH, 1, 100)

        assert exc_info.value.context["period"] == "2026-03"
        assert exc_info.value.__cause__ is exc

    @pytest.mark.asyncio
    async def test_check_violation_becomes_validation(self) -> None:
        exc = IntegrityError("UPDATE ...", {}, Exception("CHECK constraint failed"))
        repo = RevenueRepository(self._failing_session(exc))

        with pytest.raises(RevenueValidationError) as exc_info:
            await repo.apply_delta(MARCH, 1, 100)

        assert not isinstance(exc_info.value, RevenueConflictError)

    @pytest.mark.asyncio
    async def test_sqlstate_decides_over_message_text(self) -> None:
        exc = IntegrityError(
            "INSERT ...", {}, _DriverError("unique-looking foreign key failure", sqlstate="23503")
        )
        repo = RevenueRepository(self._failing_session(exc))

        with pytest.raises(RevenueValidationError) as exc_info:
            await repo.apply_delta(MARCH, 1, 100)

        assert not isinstance(exc_info.value, RevenueConflictError)

    @pytest.mark.asyncio
    async def test_sqlite_unique_message_becomes_conflict(self) -> None:
        exc = IntegrityError(
            "INSERT ...", {}, Exception("UNIQUE constraint failed: revenues.period")
        )
        repo = RevenueRepository(self._failing_session(exc))

        with pytest.raises(RevenueConflictError):
            await repo.apply_delta(MARCH, 1, 100)

    @pytest.mark.asyncio
    async def test_driver_failure_becomes_infrastructure(self) -> None:
        exc = OperationalError("SELECT ...", {}, Exception("connection refused"))
        repo = RevenueRepository(self._failing_session(exc))

        with pytest.raises(RevenueInfrastructureError):
            await repo.find_by_period(MARCH)

    @pytest.mark.asyncio
    async def test_unsupported_dialect(self) -> None:
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "mysql"

        with pytest.raises(RevenueInfrastructureError):
            await RevenueRepository(session).apply_delta(MARCH, 1, 100)
