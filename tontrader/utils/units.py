"""
Conversions between raw on-chain integer amounts and human units.

TON itself always has 9 decimals; jettons carry their own precision.
"""

from decimal import Decimal, ROUND_DOWN
from typing import Union

TON_DECIMALS = 9

Number = Union[Decimal, int, str]


def quantum(places: int) -> Decimal:
    """Decimal exponent for ``places`` fractional digits (2 -> 0.01)."""
    return Decimal(1).scaleb(-places)


def normalize(raw: Number, decimals: int = TON_DECIMALS) -> Decimal:
    """Raw integer units -> human units."""
    return Decimal(raw).scaleb(-decimals)


def denormalize(amount: Number, decimals: int = TON_DECIMALS) -> int:
    """Human units -> raw integer units, truncating sub-unit dust."""
    return int(Decimal(amount).scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def to_nano(amount: Number) -> int:
    return denormalize(amount, TON_DECIMALS)


def from_nano(raw: Number) -> Decimal:
    return normalize(raw, TON_DECIMALS)


def round_down(amount: Decimal, places: int = TON_DECIMALS) -> Decimal:
    return amount.quantize(quantum(places), rounding=ROUND_DOWN)
