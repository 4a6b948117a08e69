"""
shared/utils/money.py
Decimal helpers for BDT amounts.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise along
    return Decimal(str(value))


def quantize_bdt(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def split_commission(amount: Number, percent: Number) -> tuple[Decimal, Decimal]:
    """
    Returns (commission, net) for amount at percent.

    Only the commission is rounded; net is derived by subtraction so the
    two always add back up to the amount.
    """
    amount = quantize_bdt(amount)
    commission = quantize_bdt(amount * to_decimal(percent) / Decimal(100))
    return commission, amount - commission


def money_str(value: Number) -> str:
    """JSON-safe rendering used in payout meta."""
    return str(quantize_bdt(value))
