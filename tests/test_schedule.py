"""
Tests for billing calendar math.
"""

from datetime import date
from decimal import Decimal

from studio_billing.models.billing import Frequency
from studio_billing.services.schedule import (
    add_period,
    anchor_day,
    first_billing_date,
    monthly_factor,
    previous_period_start,
)


class TestFirstBillingDate:
    def test_defaults_to_start_date(self):
        assert first_billing_date(date(2024, 1, 17), Frequency.MONTHLY) == date(2024, 1, 17)

    def test_billing_day_later_in_month(self):
        assert first_billing_date(date(2024, 1, 10), Frequency.MONTHLY, 15) == date(2024, 1, 15)

    def test_billing_day_already_passed(self):
        assert first_billing_date(date(2024, 1, 20), Frequency.MONTHLY, 15) == date(2024, 2, 15)

    def test_billing_day_on_start(self):
        assert first_billing_date(date(2024, 1, 1), Frequency.MONTHLY, 1) == date(2024, 1, 1)

    def test_billing_day_clamped_in_february(self):
        assert first_billing_date(date(2024, 2, 1), Frequency.MONTHLY, 31) == date(2024, 2, 29)
        assert first_billing_date(date(2023, 2, 1), Frequency.MONTHLY, 31) == date(2023, 2, 28)

    def test_billing_day_ignored_for_weekly(self):
        assert first_billing_date(date(2024, 1, 3), Frequency.WEEKLY, 15) == date(2024, 1, 3)


class TestAddPeriod:
    def test_weekly_and_biweekly(self):
        assert add_period(date(2024, 12, 28), Frequency.WEEKLY) == date(2025, 1, 4)
        assert add_period(date(2024, 12, 28), Frequency.BIWEEKLY) == date(2025, 1, 11)

    def test_monthly_31st_through_a_leap_year(self):
        d = date(2024, 1, 31)
        seen = []
        for _ in range(4):
            d = add_period(d, Frequency.MONTHLY, 31)
            seen.append(d)
        assert seen == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30), date(2024, 5, 31)]

    def test_monthly_31st_non_leap(self):
        assert add_period(date(2023, 1, 31), Frequency.MONTHLY, 31) == date(2023, 2, 28)

    def test_without_anchor_drifts_from_clamped_day(self):
        # Anchor keeps the 31st; the bare day would stay on the 29th
        assert add_period(date(2024, 2, 29), Frequency.MONTHLY) == date(2024, 3, 29)
        assert add_period(date(2024, 2, 29), Frequency.MONTHLY, 31) == date(2024, 3, 31)

    def test_quarterly_and_yearly(self):
        assert add_period(date(2024, 11, 30), Frequency.QUARTERLY, 30) == date(2025, 2, 28)
        assert add_period(date(2024, 2, 29), Frequency.YEARLY, 29) == date(2025, 2, 28)
        assert add_period(date(2025, 2, 28), Frequency.YEARLY, 29) == date(2026, 2, 28)

    def test_always_strictly_later(self):
        start = date(2024, 1, 31)
        for freq in Frequency:
            assert add_period(start, freq, anchor_day(freq, None, start)) > start

    def test_previous_period_start(self):
        assert previous_period_start(date(2024, 3, 15), Frequency.MONTHLY, 15) == date(2024, 2, 15)
        assert previous_period_start(date(2024, 3, 15), Frequency.WEEKLY) == date(2024, 3, 8)


class TestAnchorDay:
    def test_billing_day_wins(self):
        assert anchor_day(Frequency.MONTHLY, 5, date(2024, 1, 31)) == 5

    def test_start_day_for_month_based(self):
        assert anchor_day(Frequency.QUARTERLY, None, date(2024, 1, 31)) == 31

    def test_none_for_week_based(self):
        assert anchor_day(Frequency.WEEKLY, 5, date(2024, 1, 31)) is None


class TestMonthlyFactor:
    def test_factors(self):
        assert monthly_factor(Frequency.MONTHLY) == 1
        assert (Decimal(1200) * monthly_factor(Frequency.YEARLY)).quantize(Decimal("0.01")) == Decimal("100.00")
        assert (Decimal(300) * monthly_factor(Frequency.QUARTERLY)).quantize(Decimal("0.01")) == Decimal("100.00")
        assert (Decimal(120) * monthly_factor(Frequency.WEEKLY)).quantize(Decimal("0.01")) == Decimal("520.00")
        assert (Decimal(120) * monthly_factor(Frequency.BIWEEKLY)).quantize(Decimal("0.01")) == Decimal("260.00")
