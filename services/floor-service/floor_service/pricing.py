from __future__ import annotations

import dataclasses
from typing import Dict, List, Sequence, Tuple

from .catalog import PriceLookup
from .errors import ValidationError
from .models import GuestItemGroup, ItemKind
from .totals import apply_discount


def correct_prices(groups: Sequence[GuestItemGroup], prices: Dict[str, float]) -> List[GuestItemGroup]:
    """Re-price every item from ``prices`` and recompute its final price.

    The item's own discount is kept. Items whose catalog id is missing from
    ``prices`` raise ValidationError.
    """
    unknown = sorted(
        {item.item_id for guest in groups for item in guest.items if item.item_id not in prices}
    )
    if unknown:
        raise ValidationError(f"Unknown catalog items: {', '.join(unknown)}")

    corrected = []
    for guest in groups:
        items = []
        for item in guest.items:
            price = prices[item.item_id]
            discount = item.discount or 0
            items.append(
                dataclasses.replace(
                    item,
                    price=price,
                    discount=discount,
                    final_price=apply_discount(price, discount),
                )
            )
        corrected.append(GuestItemGroup(guest_number=guest.guest_number, items=items))
    return corrected


def reconcile_prices(
    food_items: Sequence[GuestItemGroup],
    drink_items: Sequence[GuestItemGroup],
    catalog: PriceLookup,
) -> Tuple[List[GuestItemGroup], List[GuestItemGroup]]:
    """Fetch current catalog prices once per catalog and re-price both collections."""
    food_ids = [item.item_id for guest in food_items for item in guest.items]
    drink_ids = [item.item_id for guest in drink_items for item in guest.items]

    food_prices = catalog.find_prices_by_ids(ItemKind.FOOD, food_ids)
    drink_prices = catalog.find_prices_by_ids(ItemKind.DRINK, drink_ids)

    return correct_prices(food_items, food_prices), correct_prices(drink_items, drink_prices)
