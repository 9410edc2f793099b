"""Proration math: pure functions over billing periods and prices.

Fractions are exact ``Decimal`` ratios of microseconds; monetary results are
rounded to cents (ROUND_HALF_UP) where they are produced, never in between.
"""

import calendar
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _micros(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def _validate_period(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValueError(f"Billing period must have positive length (start={start}, end={end})")


def used_fraction(start: datetime, end: datetime, ref: datetime) -> Decimal:
    """Fraction of the period [start, end) consumed at ``ref``, clamped to [0, 1]."""
    _validate_period(start, end)
    fraction = Decimal(_micros(ref - start)) / Decimal(_micros(end - start))
    return min(ONE, max(ZERO, fraction))


def remaining_fraction(start: datetime, end: datetime, ref: datetime) -> Decimal:
    """Fraction of the period still unused at ``ref``, clamped to [0, 1]."""
    return ONE - used_fraction(start, end, ref)


def refund_on_cancel(price: Decimal, remaining: Decimal) -> Decimal:
    """Refund for the unused part of a period."""
    return quantize_money(max(ZERO, price * remaining))


def upgrade_cost(old_price: Decimal, new_price: Decimal, remaining: Decimal) -> Decimal:
    """Charge for moving to a more expensive plan for the rest of the period."""
    return quantize_money(max(ZERO, (new_price - old_price) * remaining))


def downgrade_credit(old_price: Decimal, new_price: Decimal, remaining: Decimal) -> Decimal:
    """Credit for moving to a cheaper plan.

    ``remaining`` must be evaluated at the downgrade's effective date.
    """
    return quantize_money(max(ZERO, (old_price - new_price) * remaining))


def prorated_amount(price: Decimal, used: Decimal) -> Decimal:
    """Value of the plan already consumed."""
    return quantize_money(max(ZERO, price * used))


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_remaining(end: datetime, ref: datetime) -> int:
    """Whole days left until ``end`` (rounded up, never negative)."""
    seconds = (end - ref).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86_400)
