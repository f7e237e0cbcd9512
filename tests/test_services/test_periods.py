"""Tests for calendar-month period helpers."""

from datetime import UTC, date, datetime

import pytest

from billing_dashboard.core.errors import RevenueValidationError
from billing_dashboard.services.revenue.periods import (
    derive_period,
    format_period,
    month_name,
    parse_period,
    period_range,
    rolling_window,
    shift_period,
)


class TestDerivePeriod:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (date(2026, 3, 15), date(2026, 3, 1)),
            (date(2026, 3, 1), date(2026, 3, 1)),
            (date(2026, 3, 31), date(2026, 3, 1)),
            (date(2024, 2, 29), date(2024, 2, 1)),
            (datetime(2026, 12, 31, 23, 59, tzinfo=UTC), date(2026, 12, 1)),
        ],
    )
    def test_first_day_of_month(self, value: date, expected: date) -> None:
        assert derive_period(value) == expected

    def test_dates_in_same_month_share_a_period(self) -> None:
        assert derive_period(date(2026, 5, 2)) == derive_period(date(2026, 5, 30))


class TestShiftAndRange:
    def test_shift_across_year_boundary(self) -> None:
        assert shift_period(date(2026, 1, 1), -1) == date(2025, 12, 1)
        assert shift_period(date(2025, 12, 1), 1) == date(2026, 1, 1)

    def test_shift_normalizes_input(self) -> None:
        assert shift_period(date(2026, 1, 31), 1) == date(2026, 2, 1)

    def test_period_range_inclusive(self) -> None:
        assert period_range(date(2025, 11, 20), date(2026, 2, 3)) == [
            date(2025, 11, 1),
            date(2025, 12, 1),
            date(2026, 1, 1),
            date(2026, 2, 1),
        ]

    def test_period_range_empty_when_reversed(self) -> None:
        assert period_range(date(2026, 2, 1), date(2026, 1, 1)) == []


class TestRollingWindow:
    def test_twelve_consecutive_months_ending_now(self) -> None:
        window = rolling_window(date(2026, 6, 15))

        assert len(window) == 12
        assert window[0] == date(2025, 7, 1)
        assert window[-1] == date(2026, 6, 1)
        assert window == sorted(window)

    def test_window_in_january(self) -> None:
        window = rolling_window(datetime(2026, 1, 1, 0, 0, tzinfo=UTC))

        assert window[0] == date(2025, 2, 1)
        assert window[-1] == date(2026, 1, 1)


class TestFormatAndParse:
    def test_format(self) -> None:
        assert format_period(date(2026, 3, 1)) == "2026-03"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2026-03", date(2026, 3, 1)),
            ("2026-03-17", date(2026, 3, 1)),
            (" 2026-12 ", date(2026, 12, 1)),
        ],
    )
    def test_parse(self, value: str, expected: date) -> None:
        assert parse_period(value) == expected

    @pytest.mark.parametrize("value", ["", "2026", "03-2026", "2026-13", "2026-02-30", "abc"])
    def test_parse_rejects_malformed(self, value: str) -> None:
        with pytest.raises(RevenueValidationError):
            parse_period(value)

    def test_month_name_is_locale_independent(self) -> None:
        assert month_name(date(2026, 1, 1)) == "Jan"
        assert month_name(date(2026, 12, 1)) == "Dec"
