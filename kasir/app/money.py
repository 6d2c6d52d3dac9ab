from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional


ZERO = Decimal("0")
Q2 = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(v) -> Decimal:
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    # str() first so floats coming from JSON keep their printed value.
    return Decimal(str(v))


def q2(v) -> Decimal:
    # Monetary amounts are stored as numeric(18,2); round half-up like the cashier screen.
    return to_decimal(v).quantize(Q2, rounding=ROUND_HALF_UP)


def floor_units(amount, unit) -> int:
    """
    Number of whole `unit`s contained in `amount` (e.g. loyalty points earned
    per 10000 spent). Zero for non-positive amounts or units.
    """
    amount = to_decimal(amount)
    unit = to_decimal(unit)
    if amount <= 0 or unit <= 0:
        return 0
    return int((amount / unit).to_integral_value(rounding=ROUND_FLOOR))


def fmt_amount(v) -> str:
    # 50000.00 -> "50000", 12.50 -> "12.5"
    d = to_decimal(v).normalize()
    return format(d, "f")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


def within_window(start: Optional[datetime], end: Optional[datetime], now: datetime) -> bool:
    # Inclusive on both ends.
    now = as_utc(now)
    if start is not None and as_utc(start) > now:
        return False
    if end is not None and as_utc(end) < now:
        return False
    return True
