from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence

from .models import GuestItemGroup

CENT = Decimal("0.01")


def round2(value: float) -> float:
    """Round a money amount to cents, halves away from zero."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def apply_discount(amount: float, discount: float) -> float:
    return round2(amount * (1 - (discount or 0) / 100))


def sum_final_prices(groups: Iterable[GuestItemGroup]) -> float:
    return sum(item.final_price for guest in groups for item in guest.items)


def calculate_total(
    food_items: Sequence[GuestItemGroup],
    drink_items: Sequence[GuestItemGroup],
    discount: float = 0.0,
) -> float:
    """Order total: every item's final price across both collections, less the order discount."""
    subtotal = sum_final_prices(food_items) + sum_final_prices(drink_items)
    return apply_discount(subtotal, discount)
