from __future__ import annotations

import sqlite3
from typing import Dict, List, Optional

import pytest

from floor_service.catalog import CatalogRepository
from floor_service.database import apply_schema
from floor_service.models import CreateOrderCommand, GuestItemGroup, LineItem
from floor_service.orders import OrderService
from floor_service.payments import PaymentService
from floor_service.repository import OrderRepository, PaymentRepository


class InMemoryCache:
    """CacheBackend double that keeps values in a dict and records deletions."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.deleted: List[str] = []
        self.deleted_prefixes: List[str] = []

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.values.pop(key, None)

    def delete_by_prefix(self, prefix: str) -> None:
        self.deleted_prefixes.append(prefix)
        for key in [key for key in self.values if key.startswith(prefix)]:
            del self.values[key]


@pytest.fixture()
def connection_factory(tmp_path):
    db_path = tmp_path / "floor.db"

    def factory() -> sqlite3.Connection:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    with factory() as conn:
        apply_schema(conn)
        conn.executemany(
            "INSERT INTO food_items (id, name, price, available) VALUES (?, ?, ?, ?);",
            [
                ("food-pasta", "Pasta", 10.0, 1),
                ("food-pizza", "Pizza", 12.0, 1),
                ("food-soup", "Soup", 7.25, 1),
            ],
        )
        conn.executemany(
            "INSERT INTO drink_items (id, name, price, available) VALUES (?, ?, ?, ?);",
            [
                ("drink-water", "Water", 2.0, 1),
                ("drink-wine", "Wine", 6.5, 1),
            ],
        )
        conn.commit()

    return factory


@pytest.fixture()
def cache():
    return InMemoryCache()


@pytest.fixture()
def order_repo(connection_factory):
    return OrderRepository(connection_factory=connection_factory)


@pytest.fixture()
def order_service(connection_factory, order_repo, cache):
    return OrderService(order_repo, CatalogRepository(connection_factory), cache)


@pytest.fixture()
def payment_service(connection_factory, order_repo, cache):
    return PaymentService(PaymentRepository(connection_factory), order_repo, cache)


def guest(number: int, *item_ids: str, price: float = 1.0, discount: float = 0.0) -> GuestItemGroup:
    return GuestItemGroup(
        guest_number=number,
        items=[LineItem(item_id=item_id, price=price, discount=discount) for item_id in item_ids],
    )


def order_command(**overrides) -> CreateOrderCommand:
    values = dict(
        table_number=4,
        guests_count=2,
        server_id="server-1",
        food_items=[guest(1, "food-pasta"), guest(2, "food-pizza")],
        drink_items=[guest(1, "drink-water")],
    )
    values.update(overrides)
    return CreateOrderCommand(**values)


def item_ids(groups) -> List[str]:
    return [item.id for group in groups for item in group.items]
