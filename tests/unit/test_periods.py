"""Unit tests for calendar-month arithmetic."""

from datetime import datetime, timezone

from nftstake.staking.periods import add_months, next_monthly_anchor, period_of, whole_months_between


def _dt(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestWholeMonthsBetween:
    def test_day_before_anniversary_is_zero(self):
        assert whole_months_between(_dt(2026, 1, 15), _dt(2026, 2, 14)) == 0

    def test_anniversary_is_one(self):
        assert whole_months_between(_dt(2026, 1, 15), _dt(2026, 2, 15)) == 1

    def test_thirty_five_days(self):
        assert whole_months_between(_dt(2026, 2, 8, 12), _dt(2026, 3, 15, 12)) == 1

    def test_seventy_days(self):
        assert whole_months_between(_dt(2026, 1, 4, 12), _dt(2026, 3, 15, 12)) == 2

    def test_crosses_year_boundary(self):
        assert whole_months_between(_dt(2025, 11, 1), _dt(2027, 2, 1)) == 15

    def test_end_before_start_clamps_to_zero(self):
        assert whole_months_between(_dt(2026, 3, 1), _dt(2026, 1, 1)) == 0

    def test_same_instant_is_zero(self):
        assert whole_months_between(_dt(2026, 3, 1), _dt(2026, 3, 1)) == 0


class TestAddMonths:
    def test_clamps_to_end_of_short_month(self):
        assert add_months(_dt(2026, 1, 31), 1) == _dt(2026, 2, 28)

    def test_negative_offset(self):
        assert add_months(_dt(2026, 3, 15, 12), -2) == _dt(2026, 1, 15, 12)

    def test_three_years(self):
        assert add_months(_dt(2024, 2, 29), 36) == _dt(2027, 2, 28)


class TestNextMonthlyAnchor:
    def test_before_anchor_same_month(self):
        assert next_monthly_anchor(_dt(2026, 3, 1, 1, 30), day=1, hour=2) == _dt(2026, 3, 1, 2)

    def test_after_anchor_rolls_to_next_month(self):
        assert next_monthly_anchor(_dt(2026, 3, 15, 12), day=1, hour=2) == _dt(2026, 4, 1, 2)

    def test_exactly_on_anchor_is_next_month(self):
        assert next_monthly_anchor(_dt(2026, 12, 1, 2), day=1, hour=2) == _dt(2027, 1, 1, 2)


def test_period_of():
    assert period_of(_dt(2026, 3, 15)) == (2026, 3)
