"""Decimal money helpers.

All amounts handled by the ledger are ``Decimal`` values with two fraction
digits. Derived values are rounded half-up.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Tuple

from app.core.config import settings

ZERO = Decimal("0.00")
CENT = Decimal(1).scaleb(-settings.CURRENCY_PLACES)


def to_money(value) -> Decimal:
    """Convert ``value`` to a two-place Decimal, rounding half-up.

    Floats go through ``str`` first so that ``0.1`` becomes ``0.10`` rather
    than its binary expansion.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif hasattr(value, "to_decimal"):
        # bson Decimal128
        amount = value.to_decimal()
    else:
        amount = Decimal(value)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(amounts: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for amount in amounts:
        total += amount
    return to_money(total)


def split_amount(original: Decimal, applied: Decimal) -> Tuple[Decimal, Decimal]:
    """Split ``original`` into ``(applied, leftover)``.

    ``applied`` is rounded to cents first; ``leftover`` is the exact
    difference so the two parts always add up to ``original``.
    """
    original = to_money(original)
    applied = to_money(applied)
    if applied > original:
        applied = original
    return applied, original - applied
