# units.py
"""Decimal token amounts <-> integer base units (lamports)."""

from __future__ import annotations
from decimal import Decimal, ROUND_FLOOR
from typing import Union

from config import settings

Amount = Union[Decimal, int, str, float]


def to_base_units(amount: Amount, decimals: int | None = None) -> int:
    """
    Convert a whole-token amount (e.g. Decimal('0.1')) to base units.
    Sub-unit dust is floored; floats go through str() so 0.1 stays 0.1.
    """
    dec = settings.TOKEN_DECIMALS if decimals is None else int(decimals)
    if isinstance(amount, float):
        amount = str(amount)
    value = Decimal(amount) * (10 ** dec)
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(base: int, decimals: int | None = None) -> Decimal:
    dec = settings.TOKEN_DECIMALS if decimals is None else int(decimals)
    return (Decimal(int(base)) / (10 ** dec)).quantize(Decimal(1).scaleb(-dec))


def display_amount(base: int, decimals: int | None = None) -> float:
    """Float view for JSON responses."""
    return float(from_base_units(base, decimals))
