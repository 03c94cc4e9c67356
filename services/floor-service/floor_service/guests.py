from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Sequence

from .models import GuestItemGroup, LineItem


def group_items(items: Iterable[LineItem]) -> List[GuestItemGroup]:
    """Partition a flat item list by guest number, lowest guest first."""
    grouped: Dict[int, List[LineItem]] = {}
    for item in items:
        grouped.setdefault(item.guest_number, []).append(item)
    return [
        GuestItemGroup(guest_number=guest_number, items=grouped[guest_number])
        for guest_number in sorted(grouped)
    ]


def flatten_items(groups: Sequence[GuestItemGroup]) -> List[LineItem]:
    """Project guest groups back to storage rows.

    Each item takes its guest number from the group it sits in. Optional
    fields fall back to their defaults; ``id`` stays None for new items.
    """
    flat: List[LineItem] = []
    for guest in groups:
        for item in guest.items:
            flat.append(
                dataclasses.replace(
                    item,
                    guest_number=guest.guest_number,
                    discount=item.discount or 0,
                    special_request=item.special_request or "",
                    allergies=list(item.allergies or []),
                )
            )
    return flat


def merge_items(
    existing: Sequence[GuestItemGroup], incoming: Sequence[GuestItemGroup]
) -> List[GuestItemGroup]:
    """Append incoming items to the matching guest, or add the guest.

    Never removes or replaces existing items, and leaves both inputs untouched.
    """
    merged = [GuestItemGroup(guest.guest_number, list(guest.items)) for guest in existing]
    by_guest = {guest.guest_number: guest for guest in merged}
    for guest in incoming:
        target = by_guest.get(guest.guest_number)
        if target is not None:
            target.items.extend(guest.items)
            continue
        added = GuestItemGroup(guest.guest_number, list(guest.items))
        merged.append(added)
        by_guest[guest.guest_number] = added
    return merged
