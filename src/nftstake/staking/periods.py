"""Calendar-month arithmetic for staking terms and reward cadence. All values UTC."""

from __future__ import annotations

from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping to the last day of short months."""
    return dt + relativedelta(months=months)


def whole_months_between(start: datetime, end: datetime) -> int:
    """Number of complete calendar months from start to end, never negative.

    Jan 15 -> Feb 14 is 0 months, Jan 15 -> Feb 15 is 1.
    """
    if end <= start:
        return 0
    delta = relativedelta(end, start)
    return max(0, delta.years * 12 + delta.months)


def next_monthly_anchor(now: datetime, day: int = 1, hour: int = 0) -> datetime:
    """Next time the monthly run fires: ``day`` at ``hour``:00 UTC, strictly after ``now``."""
    anchor = now.replace(day=day, hour=hour, minute=0, second=0, microsecond=0)
    if anchor > now:
        return anchor
    return anchor + relativedelta(months=1)


def period_of(dt: datetime) -> tuple[int, int]:
    """(year, month) bucket used by the ledger."""
    return dt.year, dt.month
