"""
Billing clock for DNS plans.

Every billing cycle ends at the first of the next calendar month (UTC).
Proration is anchored to that boundary, never to a subscription's stored
end_date, so the same inputs at the same instant always prorate the same.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

TOKENS_PER_UNIT = 100
PRORATION_DAYS = 30
SETTLEMENT_THRESHOLD = Decimal("0.01")
_CENT = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_cycle_start(now: datetime) -> datetime:
    """First instant of the next calendar month."""
    now = as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def cycle_end(now: datetime) -> datetime:
    """Last instant of the current billing cycle."""
    return next_cycle_start(now) - timedelta(microseconds=1)


def days_remaining_in_cycle(now: datetime) -> int:
    remaining = next_cycle_start(now) - as_utc(now)
    return max(0, math.ceil(remaining.total_seconds() / 86400))


def cents_to_amount(cents: int) -> Decimal:
    return (Decimal(cents) / TOKENS_PER_UNIT).quantize(_CENT)


def tokens_to_amount(tokens: int) -> Decimal:
    return (Decimal(tokens) / TOKENS_PER_UNIT).quantize(_CENT)


def amount_to_tokens(amount: Decimal) -> int:
    """Convert a currency amount to whole tokens (absolute value)."""
    return int((abs(Decimal(amount)) * TOKENS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorate(current_price_cents: int, target_price_cents: int, now: datetime) -> Decimal:
    """
    Signed prorated charge for switching plans at `now`.

    Positive means the user owes money (upgrade), negative means a refund.
    """
    price_delta = Decimal(target_price_cents - current_price_cents) / TOKENS_PER_UNIT
    days = Decimal(days_remaining_in_cycle(now))
    delta = price_delta * days / Decimal(PRORATION_DAYS)
    return delta.quantize(_CENT, rounding=ROUND_HALF_UP)


def requires_settlement(delta: Decimal) -> bool:
    return abs(delta) > SETTLEMENT_THRESHOLD
