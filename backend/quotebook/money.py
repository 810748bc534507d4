# Overview: Decimal money helpers (pence precision, half-up rounding).

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Numeric(12, 2): largest amount the store can hold
MAX_AMOUNT = Decimal("9999999999.99")


def quantize_money(value) -> Decimal:
    """Round to pence, half-up. Accepts Decimal/int/str; never float math."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(base: Decimal, rate: Decimal) -> Decimal:
    return quantize_money(base * rate / HUNDRED)


def format_money(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return f"{quantize_money(value):.2f}"
