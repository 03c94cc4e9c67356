from __future__ import annotations

import pytest

from floor_service.errors import ConflictError, NotFoundError, ValidationError
from floor_service.models import (
    ItemKind,
    OrderFilter,
    OrderPropertiesUpdate,
    OrderStatus,
    PaymentStatus,
)

from conftest import guest, item_ids, order_command


def test_create_order_reprices_items_and_totals(order_service, cache):
    order = order_service.create_order(order_command())

    assert order.status is OrderStatus.RECEIVED
    assert order.version == 1
    assert order.completion_time is None
    assert order.total_amount == 24.0
    assert [group.guest_number for group in order.food_items] == [1, 2]
    pasta = order.food_items[0].items[0]
    assert pasta.price == 10.0
    assert pasta.final_price == 10.0
    assert pasta.name == "Pasta"
    assert pasta.id is not None
    assert pasta.payment_status is PaymentStatus.NONE
    assert "orders:list:" in cache.deleted_prefixes


def test_create_order_applies_item_and_order_discounts(order_service):
    order = order_service.create_order(
        order_command(
            discount=10,
            food_items=[guest(1, "food-pasta", discount=10)],
            drink_items=[guest(1, "drink-wine")],
        )
    )

    assert order.food_items[0].items[0].final_price == 9.0
    # (9.00 + 6.50) less 10%
    assert order.total_amount == 13.95


def test_create_order_requires_items(order_service):
    with pytest.raises(ValidationError):
        order_service.create_order(order_command(food_items=[], drink_items=[guest(1)]))


def test_create_order_rejects_guest_outside_party(order_service):
    with pytest.raises(ValidationError, match="Guest number 3"):
        order_service.create_order(order_command(food_items=[guest(3, "food-pasta")]))


def test_create_order_rejects_unknown_catalog_item(order_service):
    with pytest.raises(ValidationError, match="food-ghost"):
        order_service.create_order(order_command(food_items=[guest(1, "food-ghost")]))


def test_create_completed_order_stamps_completion_time(order_service):
    order = order_service.create_order(order_command(status=OrderStatus.COMPLETED))

    assert order.completion_time is not None


def test_find_order_by_id_reads_through_cache(order_service, cache):
    created = order_service.create_order(order_command())

    first = order_service.find_order_by_id(created.id)
    second = order_service.find_order_by_id(created.id)

    assert f"order:{created.id}" in cache.values
    assert first == second
    assert second.food_items[0].items[0].name == "Pasta"


def test_find_order_by_id_missing(order_service):
    with pytest.raises(NotFoundError) as excinfo:
        order_service.find_order_by_id("missing")

    assert excinfo.value.context == "OrdersService"


def test_find_orders_filters_and_pages(order_service):
    order_service.create_order(order_command(table_number=1))
    order_service.create_order(order_command(table_number=2, food_items=[guest(1, "food-soup")]))
    order_service.create_order(order_command(table_number=2, server_id="server-2"))

    page = order_service.find_orders(
        OrderFilter(table_number=2, page_size=1, sort_by="total_amount", sort_order="asc")
    )

    assert page.total_count == 2
    assert page.total_pages == 2
    assert page.orders[0].total_amount == 9.25
    assert page.price_range.min == 9.25
    assert page.price_range.max == 24.0

    by_server = order_service.find_orders(OrderFilter(server_id="server-2"))
    assert by_server.total_count == 1


def test_find_orders_rejects_unknown_sort_field(order_service):
    with pytest.raises(ValidationError):
        order_service.find_orders(OrderFilter(sort_by="drop table"))


def test_find_orders_empty(order_service):
    page = order_service.find_orders(OrderFilter())

    assert page.orders == []
    assert page.total_count == 0
    assert page.price_range.min == 0.0


def test_update_items_merges_and_keeps_existing_rows(order_service):
    order = order_service.create_order(order_command())
    existing_ids = set(item_ids(order.food_items))
    order_service.print_order_items(order.id, list(existing_ids))

    updated = order_service.update_items_in_order(
        order.id,
        food_items=[guest(2, "food-soup")],
        drink_items=[guest(2, "drink-wine")],
        expected_version=order.version,
    )

    guest_two = updated.food_items[1]
    assert [item.item_id for item in guest_two.items] == ["food-pizza", "food-soup"]
    assert existing_ids <= set(item_ids(updated.food_items))
    assert all(item.printed for group in updated.food_items for item in group.items if item.id in existing_ids)
    assert updated.total_amount == 24.0 + 7.25 + 6.5
    assert updated.version == order.version + 1


def test_update_items_rejects_stale_version(order_service):
    order = order_service.create_order(order_command())
    order_service.update_items_in_order(order.id, food_items=[guest(1, "food-soup")])

    with pytest.raises(ConflictError):
        order_service.update_items_in_order(
            order.id, food_items=[guest(1, "food-soup")], expected_version=order.version
        )


def test_update_items_requires_items(order_service):
    order = order_service.create_order(order_command())

    with pytest.raises(ValidationError):
        order_service.update_items_in_order(order.id)


def test_update_items_on_closed_order(order_service):
    order = order_service.create_order(order_command(status=OrderStatus.CANCELED))

    with pytest.raises(ConflictError):
        order_service.update_items_in_order(order.id, food_items=[guest(1, "food-soup")])


def test_update_items_missing_order(order_service):
    with pytest.raises(NotFoundError):
        order_service.update_items_in_order("missing", food_items=[guest(1, "food-soup")])


def test_update_properties_only_touches_supplied_fields(order_service, cache):
    order = order_service.create_order(order_command(comments="window seat"))

    updated = order_service.update_order_properties(order.id, OrderPropertiesUpdate(tip=5.0))

    assert updated.tip == 5.0
    assert updated.comments == "window seat"
    assert updated.total_amount == order.total_amount
    assert f"order:{order.id}" in cache.deleted


def test_update_properties_status_drives_completion_time(order_service):
    order = order_service.create_order(order_command())

    served = order_service.update_order_properties(
        order.id, OrderPropertiesUpdate(status=OrderStatus.SERVED)
    )
    assert served.completion_time is None

    disputed = order_service.update_order_properties(
        order.id, OrderPropertiesUpdate(status=OrderStatus.DISPUTED)
    )
    assert disputed.completion_time is not None

    tipped = order_service.update_order_properties(
        order.id, OrderPropertiesUpdate(status=OrderStatus.DISPUTED, tip=2.0)
    )
    assert tipped.completion_time == disputed.completion_time


def test_update_properties_discount_recomputes_total(order_service):
    order = order_service.create_order(order_command())

    updated = order_service.update_order_properties(order.id, OrderPropertiesUpdate(discount=50))

    assert updated.discount == 50
    assert updated.total_amount == 12.0


@pytest.mark.parametrize(
    "status", [OrderStatus.COMPLETED, OrderStatus.DISPUTED, OrderStatus.CANCELED]
)
def test_closed_order_keeps_its_status(order_service, status):
    order = order_service.create_order(order_command(status=status))

    with pytest.raises(ConflictError, match="cannot change status"):
        order_service.update_order_properties(
            order.id, OrderPropertiesUpdate(status=OrderStatus.SERVED)
        )

    updated = order_service.update_order_properties(order.id, OrderPropertiesUpdate(tip=4.0))
    assert updated.status is status
    assert updated.tip == 4.0


def test_guests_count_cannot_drop_below_seated_guests(order_service):
    order = order_service.create_order(order_command())

    with pytest.raises(ValidationError):
        order_service.update_order_properties(order.id, OrderPropertiesUpdate(guests_count=1))


def test_print_then_call_items(order_service):
    order = order_service.create_order(order_command())
    ids = item_ids(order.food_items)

    assert order_service.print_order_items(order.id, ids) == f"Items {', '.join(ids)} have been printed"
    assert order_service.call_order_items(order.id, ids) == f"Items {', '.join(ids)} have been called"

    reloaded = order_service.find_order_by_id(order.id)
    assert all(item.printed and item.fired for group in reloaded.food_items for item in group.items)
    assert not any(item.printed for group in reloaded.drink_items for item in group.items)


def test_print_twice_conflicts(order_service):
    order = order_service.create_order(order_command())
    ids = item_ids(order.drink_items)
    order_service.print_order_items(order.id, ids)

    with pytest.raises(ConflictError, match="already been printed"):
        order_service.print_order_items(order.id, ids)


def test_call_requires_printed_items(order_service):
    order = order_service.create_order(order_command())

    with pytest.raises(ConflictError, match="have not been printed"):
        order_service.call_order_items(order.id, item_ids(order.food_items))


def test_call_twice_conflicts(order_service):
    order = order_service.create_order(order_command())
    ids = item_ids(order.food_items)
    order_service.print_order_items(order.id, ids)
    order_service.call_order_items(order.id, ids)

    with pytest.raises(ConflictError, match="already been fired"):
        order_service.call_order_items(order.id, ids)


def test_print_unknown_items(order_service):
    order = order_service.create_order(order_command())
    other = order_service.create_order(order_command())

    with pytest.raises(NotFoundError):
        order_service.print_order_items(order.id, item_ids(other.food_items))
    with pytest.raises(ValidationError):
        order_service.print_order_items(order.id, [])


def test_delete_order(order_service, order_repo):
    order = order_service.create_order(order_command())

    order_service.delete_order(order.id)

    with pytest.raises(NotFoundError):
        order_service.find_order_by_id(order.id)
    with order_repo.transaction() as conn:
        assert order_repo.get_items(conn, order.id, ItemKind.FOOD) == []


def test_delete_order_with_printed_items(order_service):
    order = order_service.create_order(order_command())
    order_service.print_order_items(order.id, item_ids(order.drink_items))

    with pytest.raises(ConflictError, match="printed"):
        order_service.delete_order(order.id)


def test_delete_order_with_payment(order_service, payment_service):
    order = order_service.create_order(order_command())
    payment_service.create_payment(order.id, drink_item_ids=item_ids(order.drink_items))

    with pytest.raises(ConflictError, match="payments"):
        order_service.delete_order(order.id)
