"""Tests for proration math: pure functions, no database."""

import random
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from subscription_engine.billing.proration import (
    add_months,
    days_remaining,
    downgrade_credit,
    prorated_amount,
    quantize_money,
    refund_on_cancel,
    remaining_fraction,
    upgrade_cost,
    used_fraction,
)

PERIOD_START = datetime(2026, 4, 1)
PERIOD_END = datetime(2026, 5, 1)  # 30 days


def _day(n: float) -> datetime:
    return PERIOD_START + timedelta(days=n)


class TestFractions:
    """used_fraction / remaining_fraction over [start, end)."""

    def test_start_of_period(self):
        assert used_fraction(PERIOD_START, PERIOD_END, PERIOD_START) == Decimal("0")
        assert remaining_fraction(PERIOD_START, PERIOD_END, PERIOD_START) == Decimal("1")

    def test_halfway(self):
        assert used_fraction(PERIOD_START, PERIOD_END, _day(15)) == Decimal("0.5")
        assert remaining_fraction(PERIOD_START, PERIOD_END, _day(15)) == Decimal("0.5")

    def test_reference_after_end_clamps_remaining_to_zero(self):
        assert remaining_fraction(PERIOD_START, PERIOD_END, _day(45)) == Decimal("0")

    def test_reference_before_start_clamps_used_to_zero(self):
        assert used_fraction(PERIOD_START, PERIOD_END, _day(-3)) == Decimal("0")

    def test_microsecond_precision(self):
        ref = PERIOD_START + timedelta(microseconds=1)
        assert used_fraction(PERIOD_START, PERIOD_END, ref) > 0

    @pytest.mark.parametrize("end", [PERIOD_START, PERIOD_START - timedelta(days=1)])
    def test_empty_or_inverted_period_raises(self, end):
        with pytest.raises(ValueError):
            used_fraction(PERIOD_START, end, PERIOD_START)


class TestAmounts:
    """Refund, upgrade cost, downgrade credit and prorated amount."""

    def test_upgrade_at_day_zero_costs_full_difference(self):
        remaining = remaining_fraction(PERIOD_START, PERIOD_END, _day(0))
        assert upgrade_cost(Decimal("100"), Decimal("200"), remaining) == Decimal("100.00")

    def test_cancel_halfway_refunds_half(self):
        remaining = remaining_fraction(PERIOD_START, PERIOD_END, _day(15))
        assert refund_on_cancel(Decimal("100"), remaining) == Decimal("50.00")

    def test_upgrade_at_day_ten(self):
        remaining = remaining_fraction(PERIOD_START, PERIOD_END, _day(10))
        assert upgrade_cost(Decimal("100"), Decimal("200"), remaining) == Decimal("66.67")

    def test_downgrade_credit_at_effective_day_25(self):
        remaining = remaining_fraction(PERIOD_START, PERIOD_END, _day(25))
        assert downgrade_credit(Decimal("200"), Decimal("100"), remaining) == Decimal("16.67")

    def test_prorated_amount_is_value_consumed(self):
        used = used_fraction(PERIOD_START, PERIOD_END, _day(10))
        assert prorated_amount(Decimal("90"), used) == Decimal("30.00")

    def test_wrong_direction_never_goes_negative(self):
        assert upgrade_cost(Decimal("200"), Decimal("100"), Decimal("0.5")) == Decimal("0.00")
        assert downgrade_credit(Decimal("100"), Decimal("200"), Decimal("0.5")) == Decimal("0.00")

    def test_quantize_rounds_half_up(self):
        assert quantize_money(Decimal("0.005")) == Decimal("0.01")
        assert quantize_money(Decimal("2.675")) == Decimal("2.68")

    def test_amounts_non_negative_for_random_inputs(self):
        rng = random.Random(20260401)
        for _ in range(500):
            start = PERIOD_START + timedelta(seconds=rng.randint(0, 10**7))
            end = start + timedelta(seconds=rng.randint(1, 10**8))
            ref = start + timedelta(seconds=rng.randint(-(10**7), 2 * 10**8))
            old = Decimal(rng.randint(0, 100_000)) / 100
            new = Decimal(rng.randint(0, 100_000)) / 100
            remaining = remaining_fraction(start, end, ref)

            assert Decimal("0") <= remaining <= Decimal("1")
            assert refund_on_cancel(old, remaining) >= 0
            assert upgrade_cost(old, new, remaining) >= 0
            assert downgrade_credit(old, new, remaining) >= 0
            assert refund_on_cancel(old, remaining) <= old


class TestAddMonths:
    """Calendar month arithmetic."""

    def test_simple(self):
        assert add_months(datetime(2026, 4, 1, 12), 1) == datetime(2026, 5, 1, 12)

    def test_clamps_to_month_end(self):
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2028, 1, 31), 1) == datetime(2028, 2, 29)

    def test_crosses_year(self):
        assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)

    def test_twelve_months(self):
        assert add_months(datetime(2026, 4, 1), 12) == datetime(2027, 4, 1)

    def test_negative(self):
        assert add_months(datetime(2026, 3, 31), -1) == datetime(2026, 2, 28)
        assert add_months(datetime(2026, 1, 10), -12) == datetime(2025, 1, 10)


class TestDaysRemaining:
    def test_rounds_up_partial_days(self):
        assert days_remaining(_day(10), _day(3.5)) == 7

    def test_never_negative(self):
        assert days_remaining(_day(1), _day(5)) == 0
