"""
Billing calendar math.

Pure date functions, no I/O:

- first_billing_date(): where a new subscription's calendar starts.
- add_period(): one step forward, re-clamping month-based anchors so a
  31st-of-month subscription bills Jan 31, Feb 28/29, Mar 31, Apr 30, ...
- monthly_factor(): normalises an amount to monthly recurring revenue.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from studio_billing.models.billing import Frequency

_MONTHS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}

_DAYS = {
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

_MRR_FACTORS = {
    Frequency.WEEKLY: Decimal(52) / Decimal(12),
    Frequency.BIWEEKLY: Decimal(26) / Decimal(12),
    Frequency.MONTHLY: Decimal(1),
    Frequency.QUARTERLY: Decimal(1) / Decimal(3),
    Frequency.YEARLY: Decimal(1) / Decimal(12),
}


def clamp_day(year: int, month: int, day: int) -> date:
    """date(year, month, day) with day clamped to the month's last day."""
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def add_months(d: date, months: int, anchor_day: Optional[int] = None) -> date:
    index = d.year * 12 + (d.month - 1) + months
    return clamp_day(index // 12, index % 12 + 1, anchor_day or d.day)


def anchor_day(frequency: Frequency, billing_day: Optional[int], start_date: date) -> Optional[int]:
    """Day-of-month month-based cycles snap to; None for week-based cycles."""
    if not Frequency(frequency).is_month_based:
        return None
    return billing_day or start_date.day


def first_billing_date(start_date: date, frequency: Frequency, billing_day: Optional[int] = None) -> date:
    """First date on or after start_date that matches the billing day.

    Without a billing day, or for week-based frequencies, billing starts on
    start_date itself.
    """
    if billing_day and Frequency(frequency).is_month_based:
        candidate = clamp_day(start_date.year, start_date.month, billing_day)
        if candidate >= start_date:
            return candidate
        return add_months(start_date, 1, billing_day)
    return start_date


def add_period(current: date, frequency: Frequency, anchor: Optional[int] = None) -> date:
    """The billing date one period after ``current``. Always strictly later."""
    frequency = Frequency(frequency)
    if frequency in _DAYS:
        return current + timedelta(days=_DAYS[frequency])
    return add_months(current, _MONTHS[frequency], anchor)


def previous_period_start(current: date, frequency: Frequency, anchor: Optional[int] = None) -> date:
    """The billing date one period before ``current`` (used for proration)."""
    frequency = Frequency(frequency)
    if frequency in _DAYS:
        return current - timedelta(days=_DAYS[frequency])
    return add_months(current, -_MONTHS[frequency], anchor)


def monthly_factor(frequency: Frequency) -> Decimal:
    return _MRR_FACTORS[Frequency(frequency)]


def utc_today() -> date:
    """The billing calendar runs on UTC dates."""
    return datetime.now(timezone.utc).date()
