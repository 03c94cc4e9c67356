from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter

from . import cache as cache_keys
from .cache import CacheBackend, ReadThroughCache
from .catalog import PriceLookup
from .errors import ConflictError, NotFoundError, ValidationError, handle_error
from .guests import flatten_items, group_items, merge_items
from .models import (
    SETTLED_STATUSES,
    TERMINAL_STATUSES,
    CreateOrderCommand,
    GuestItemGroup,
    ItemKind,
    LineItem,
    OrderFilter,
    OrderPage,
    OrderPropertiesUpdate,
    OrderRecord,
    OrderView,
    PaymentStatus,
    PriceRange,
)
from .pricing import reconcile_prices
from .repository import ORDER_SORT_FIELDS, OrderRepository, total_pages
from .totals import calculate_total

logger = logging.getLogger("floor-service.orders")

_ORDER_VIEW = TypeAdapter(OrderView)
_ORDER_PAGE = TypeAdapter(OrderPage)
_ORDER_FILTER = TypeAdapter(OrderFilter)


class OrderService:
    """Create, read, update and delete dine-in orders and their line items."""

    service_name = "OrdersService"

    def __init__(
        self,
        repository: OrderRepository,
        catalog: PriceLookup,
        cache: Optional[CacheBackend] = None,
    ):
        self._repo = repository
        self._catalog = catalog
        self._cache = ReadThroughCache(cache)

    def find_orders(self, criteria: OrderFilter) -> OrderPage:
        try:
            _validate_page(criteria.page, criteria.page_size, criteria.sort_by, ORDER_SORT_FIELDS)
            key = f"{cache_keys.ORDERS_LIST_PREFIX}{_ORDER_FILTER.dump_json(criteria).decode('utf-8')}"
            return self._cache.fetch(key, lambda: self._load_orders(criteria), _ORDER_PAGE)
        except Exception as exc:
            raise self._wrap(exc) from exc

    def find_order_by_id(self, order_id: str) -> OrderView:
        try:
            return self._cache.fetch(
                cache_keys.order_key(order_id),
                lambda: self._load_view(order_id),
                _ORDER_VIEW,
            )
        except Exception as exc:
            raise self._wrap(exc) from exc

    def create_order(self, command: CreateOrderCommand) -> OrderView:
        try:
            if not _has_items(command.food_items) and not _has_items(command.drink_items):
                raise ValidationError("An order needs at least one food or drink item")
            _validate_guests(command.guests_count, command.food_items, command.drink_items)

            food, drink, total = self._prepare_items(
                command.food_items, command.drink_items, command.discount
            )
            now = _now()
            record = OrderRecord(
                id=str(uuid.uuid4()),
                table_number=command.table_number,
                server_id=command.server_id,
                guests_count=command.guests_count,
                status=command.status,
                discount=command.discount or 0,
                total_amount=total,
                tip=command.tip or 0,
                comments=command.comments,
                allergies=list(command.allergies),
                version=1,
                created_at=now,
                updated_at=now,
                completion_time=now if command.status in SETTLED_STATUSES else None,
            )
            with self._repo.transaction() as conn:
                self._repo.insert_order(conn, record)
                self._repo.insert_items(conn, record.id, ItemKind.FOOD, food)
                self._repo.insert_items(conn, record.id, ItemKind.DRINK, drink)
                view = self._view(conn, record)
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._cache.invalidate(prefixes=[cache_keys.ORDERS_LIST_PREFIX])
        logger.info(
            "Created order id=%s table=%s items=%d total=%.2f",
            record.id,
            record.table_number,
            len(food) + len(drink),
            record.total_amount,
        )
        return view

    def update_items_in_order(
        self,
        order_id: str,
        food_items: Sequence[GuestItemGroup] = (),
        drink_items: Sequence[GuestItemGroup] = (),
        expected_version: Optional[int] = None,
    ) -> OrderView:
        """Add items to an order, re-price everything and rewrite its item rows.

        Items are only ever added; there is no removal path here.
        """
        try:
            if not _has_items(food_items) and not _has_items(drink_items):
                raise ValidationError("No items supplied to add to the order")

            with self._repo.transaction() as conn:
                order = self._require_order(conn, order_id, for_update=True)
                _check_version(order, expected_version)
                if order.status in TERMINAL_STATUSES:
                    raise ConflictError(f"Cannot add items to an order in status {order.status.value}")
                _validate_guests(order.guests_count, food_items, drink_items)

                current_food = group_items(self._repo.get_items(conn, order_id, ItemKind.FOOD))
                current_drink = group_items(self._repo.get_items(conn, order_id, ItemKind.DRINK))
                food, drink, total = self._prepare_items(
                    merge_items(current_food, food_items),
                    merge_items(current_drink, drink_items),
                    order.discount,
                )

                self._repo.replace_items(conn, order_id, ItemKind.FOOD, food)
                self._repo.replace_items(conn, order_id, ItemKind.DRINK, drink)
                if not self._repo.update_order(
                    conn, order_id, version=order.version, updated_at=_now(), total_amount=total
                ):
                    raise ConflictError("Order was modified concurrently")
                view = self._view(conn, self._require_order(conn, order_id))
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate_order(order_id)
        logger.info("Updated items of order id=%s total=%.2f", order_id, view.total_amount)
        return view

    def update_order_properties(
        self,
        order_id: str,
        changes: OrderPropertiesUpdate,
        expected_version: Optional[int] = None,
    ) -> OrderView:
        try:
            with self._repo.transaction() as conn:
                order = self._require_order(conn, order_id, for_update=True)
                _check_version(order, expected_version)
                fields = _changed_fields(changes)

                # Refunds and cancelled payments reopen settled orders through PaymentService.
                if changes.status is not None and changes.status is not order.status:
                    if order.status in TERMINAL_STATUSES:
                        raise ConflictError(
                            f"Order {order_id} is {order.status.value} and cannot change status"
                        )
                    fields["completion_time"] = (
                        _now() if changes.status in SETTLED_STATUSES else None
                    )

                if changes.guests_count is not None:
                    highest = self._highest_guest_number(conn, order_id)
                    if changes.guests_count < highest:
                        raise ValidationError(
                            f"Guest count {changes.guests_count} is below guest number {highest} in use"
                        )

                if changes.discount is not None:
                    food = group_items(self._repo.get_items(conn, order_id, ItemKind.FOOD))
                    drink = group_items(self._repo.get_items(conn, order_id, ItemKind.DRINK))
                    fields["total_amount"] = calculate_total(food, drink, changes.discount)

                if not self._repo.update_order(
                    conn, order_id, version=order.version, updated_at=_now(), **fields
                ):
                    raise ConflictError("Order was modified concurrently")
                view = self._view(conn, self._require_order(conn, order_id))
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate_order(order_id)
        logger.info("Updated order id=%s fields=%s", order_id, sorted(fields))
        return view

    def print_order_items(self, order_id: str, ids: Sequence[str]) -> str:
        try:
            with self._repo.transaction() as conn:
                items = self._require_items(conn, order_id, ids)
                printed = [item_id for item_id, (_, item) in items.items() if item.printed]
                if printed:
                    raise ConflictError(f"Items {', '.join(printed)} have already been printed")
                self._flag(conn, order_id, items, "printed")
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._cache.invalidate(keys=[cache_keys.order_key(order_id)])
        logger.info("Printed items order=%s ids=%s", order_id, list(ids))
        return f"Items {', '.join(ids)} have been printed"

    def call_order_items(self, order_id: str, ids: Sequence[str]) -> str:
        """Fire printed items to the kitchen."""
        try:
            with self._repo.transaction() as conn:
                items = self._require_items(conn, order_id, ids)
                not_printed = [item_id for item_id, (_, item) in items.items() if not item.printed]
                if not_printed:
                    raise ConflictError(f"Items {', '.join(not_printed)} have not been printed")
                fired = [item_id for item_id, (_, item) in items.items() if item.fired]
                if fired:
                    raise ConflictError(f"Items {', '.join(fired)} have already been fired")
                self._flag(conn, order_id, items, "fired")
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._cache.invalidate(keys=[cache_keys.order_key(order_id)])
        logger.info("Fired items order=%s ids=%s", order_id, list(ids))
        return f"Items {', '.join(ids)} have been called"

    def delete_order(self, order_id: str) -> None:
        try:
            with self._repo.transaction() as conn:
                self._require_order(conn, order_id, for_update=True)
                if self._repo.count_payments(conn, order_id) > 0:
                    raise ConflictError("Cannot delete order with associated payments")

                items = [
                    *self._repo.get_items(conn, order_id, ItemKind.FOOD),
                    *self._repo.get_items(conn, order_id, ItemKind.DRINK),
                ]
                if any(item.printed for item in items):
                    raise ConflictError("Cannot delete order with printed items")
                if any(item.fired for item in items):
                    raise ConflictError("Cannot delete order with fired items")
                if any(item.payment_status is not PaymentStatus.NONE for item in items):
                    raise ConflictError("Cannot delete order with items that have payment status")

                self._repo.delete_order(conn, order_id)
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate_order(order_id)
        logger.info("Deleted order id=%s", order_id)

    def _prepare_items(
        self,
        food_items: Sequence[GuestItemGroup],
        drink_items: Sequence[GuestItemGroup],
        discount: float,
    ) -> Tuple[List[LineItem], List[LineItem], float]:
        food, drink = reconcile_prices(food_items, drink_items, self._catalog)
        total = calculate_total(food, drink, discount)
        return flatten_items(food), flatten_items(drink), total

    def _load_view(self, order_id: str) -> OrderView:
        with self._repo.transaction() as conn:
            return self._view(conn, self._require_order(conn, order_id))

    def _load_orders(self, criteria: OrderFilter) -> OrderPage:
        with self._repo.transaction() as conn:
            orders, total, low, high = self._repo.list_orders(conn, criteria)
        return OrderPage(
            orders=orders,
            price_range=PriceRange(min=low or 0.0, max=high or 0.0),
            total_count=total,
            page=criteria.page,
            page_size=criteria.page_size,
            total_pages=total_pages(total, criteria.page_size),
        )

    def _view(self, conn, order: OrderRecord) -> OrderView:
        return OrderView(
            **order.__dict__,
            food_items=group_items(self._repo.get_items(conn, order.id, ItemKind.FOOD)),
            drink_items=group_items(self._repo.get_items(conn, order.id, ItemKind.DRINK)),
        )

    def _require_order(self, conn, order_id: str, *, for_update: bool = False) -> OrderRecord:
        order = self._repo.get_order(conn, order_id, for_update=for_update)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def _require_items(
        self, conn, order_id: str, ids: Sequence[str]
    ) -> Dict[str, Tuple[ItemKind, LineItem]]:
        """Load the requested items of one order, keyed by id in request order."""
        if not ids:
            raise ValidationError("No item ids supplied")
        self._require_order(conn, order_id, for_update=True)
        found: Dict[str, Tuple[ItemKind, LineItem]] = {}
        for kind in ItemKind:
            for item in self._repo.get_items_by_ids(conn, order_id, kind, ids):
                found[item.id] = (kind, item)
        missing = [item_id for item_id in ids if item_id not in found]
        if missing:
            raise NotFoundError(f"Items {', '.join(missing)} are not on order {order_id}")
        return {item_id: found[item_id] for item_id in ids}

    def _flag(
        self, conn, order_id: str, items: Dict[str, Tuple[ItemKind, LineItem]], flag: str
    ) -> None:
        for kind in ItemKind:
            ids = [item_id for item_id, (item_kind, _) in items.items() if item_kind is kind]
            self._repo.set_item_flag(conn, order_id, kind, ids, flag)

    def _highest_guest_number(self, conn, order_id: str) -> int:
        items = [
            *self._repo.get_items(conn, order_id, ItemKind.FOOD),
            *self._repo.get_items(conn, order_id, ItemKind.DRINK),
        ]
        return max((item.guest_number for item in items), default=0)

    def _invalidate_order(self, order_id: str) -> None:
        self._cache.invalidate(
            keys=[cache_keys.order_key(order_id)],
            prefixes=[cache_keys.ORDERS_LIST_PREFIX],
        )

    def _wrap(self, exc: Exception):
        error = handle_error(exc, self.service_name)
        if error is not exc:
            logger.exception("Unexpected failure in %s", self.service_name)
        return error


def _has_items(groups: Sequence[GuestItemGroup]) -> bool:
    return any(guest.items for guest in groups)


def _validate_guests(guests_count: int, *collections: Sequence[GuestItemGroup]) -> None:
    if guests_count < 1:
        raise ValidationError("Guest count must be at least 1")
    for groups in collections:
        for guest in groups:
            if not 1 <= guest.guest_number <= guests_count:
                raise ValidationError(
                    f"Guest number {guest.guest_number} is outside 1..{guests_count}"
                )


def _validate_page(page: int, page_size: int, sort_by: str, allowed: frozenset) -> None:
    if page < 1 or page_size < 1:
        raise ValidationError("Page and page size must be positive")
    if sort_by not in allowed:
        raise ValidationError(f"Cannot sort by {sort_by}")


def _check_version(order: OrderRecord, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != order.version:
        raise ConflictError(
            f"Order {order.id} is at version {order.version}, expected {expected_version}"
        )


def _changed_fields(changes: OrderPropertiesUpdate) -> dict:
    return {name: value for name, value in changes.__dict__.items() if value is not None}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
