"""Tests for Invoice model."""

from datetime import date
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_dashboard.models import Invoice, InvoiceStatus


class TestInvoiceModel:
    """Test Invoice model creation and validation."""

    @pytest.mark.asyncio
    async def test_create_invoice_defaults(
        self, test_session: AsyncSession, create_test_invoice: Any
    ) -> None:
        """New invoices are pending with generated id and timestamps."""
        invoice = await create_test_invoice(status=InvoiceStatus.PENDING.value)

        assert invoice.id is not None
        assert invoice.status == "pending"
        assert invoice.amount == 10_000
        assert invoice.effective_date == date(2026, 3, 15)
        assert invoice.paid_at is None
        assert invoice.created_at is not None
        assert invoice.updated_at is not None

    @pytest.mark.asyncio
    async def test_query_by_effective_date(
        self, test_session: AsyncSession, create_test_invoice: Any
    ) -> None:
        await create_test_invoice(effective_date=date(2026, 3, 1))
        await create_test_invoice(effective_date=date(2026, 4, 1))

        result = await test_session.execute(
            select(Invoice).where(Invoice.effective_date < date(2026, 4, 1))
        )

        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, test_session: AsyncSession) -> None:
        test_session.add(Invoice(amount=-100, status="paid", effective_date=date(2026, 3, 1)))

        with pytest.raises(IntegrityError):
            await test_session.commit()

    def test_status_values(self) -> None:
        assert [s.value for s in InvoiceStatus] == ["pending", "paid", "void"]
