from __future__ import annotations

import logging

import redis
from pydantic import TypeAdapter

from floor_service.cache import ReadThroughCache, RedisCache, build_cache_backend
from floor_service.models import PaymentRecord, PaymentStatus

from conftest import InMemoryCache

_PAYMENT = TypeAdapter(PaymentRecord)


def make_payment() -> PaymentRecord:
    return PaymentRecord(
        id="pay-1",
        order_id="order-1",
        amount=10.0,
        tax=1.0,
        service_charge=0.5,
        total_amount=11.5,
        tip=0.0,
        status=PaymentStatus.PENDING,
        created_at="2024-01-01T12:00:00+00:00",
        completed_at=None,
        food_item_ids=["item-1"],
    )


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("down")

    def set(self, key, value, ex=None):
        raise redis.ConnectionError("down")

    def delete(self, *keys):
        raise redis.ConnectionError("down")

    def scan_iter(self, match=None):
        raise redis.ConnectionError("down")


def test_fetch_loads_once_then_serves_cached_value():
    backend = InMemoryCache()
    cache = ReadThroughCache(backend, ttl_seconds=30)
    calls = []

    def loader():
        calls.append(1)
        return make_payment()

    first = cache.fetch("payment:pay-1", loader, _PAYMENT)
    second = cache.fetch("payment:pay-1", loader, _PAYMENT)

    assert len(calls) == 1
    assert first == second
    assert second.status is PaymentStatus.PENDING


def test_fetch_without_backend_always_loads():
    cache = ReadThroughCache()
    calls = []

    def loader():
        calls.append(1)
        return make_payment()

    cache.fetch("payment:pay-1", loader, _PAYMENT)
    cache.fetch("payment:pay-1", loader, _PAYMENT)
    cache.invalidate(keys=["payment:pay-1"], prefixes=["payments:list:"])

    assert len(calls) == 2


def test_invalidate_drops_keys_and_prefixes():
    backend = InMemoryCache()
    backend.values.update({"order:1": "{}", "orders:list:a": "{}", "orders:list:b": "{}", "payment:1": "{}"})
    cache = ReadThroughCache(backend)

    cache.invalidate(keys=["order:1"], prefixes=["orders:list:"])

    assert list(backend.values) == ["payment:1"]


def test_redis_errors_behave_like_misses(caplog):
    backend = RedisCache(BrokenRedis())
    cache = ReadThroughCache(backend)

    with caplog.at_level(logging.WARNING, logger="floor-service.cache"):
        value = cache.fetch("payment:pay-1", make_payment, _PAYMENT)
        cache.invalidate(keys=["payment:pay-1"], prefixes=["payments:list:"])

    assert value.id == "pay-1"
    assert "Cache read failed" in caplog.text
    assert "Cache prefix delete failed" in caplog.text


def test_build_cache_backend_without_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)

    assert build_cache_backend() is None


def test_build_cache_backend_unreachable(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")

    assert build_cache_backend() is None


def test_unreadable_cache_entry_is_reloaded(caplog):
    backend = InMemoryCache()
    backend.values["payment:pay-1"] = "not json"
    backend.values["payment:pay-2"] = '{"id": "pay-2", "status": "ON_HOLD"}'
    cache = ReadThroughCache(backend)
    calls = []

    def loader():
        calls.append(1)
        return make_payment()

    with caplog.at_level(logging.WARNING, logger="floor-service.cache"):
        first = cache.fetch("payment:pay-1", loader, _PAYMENT)
        second = cache.fetch("payment:pay-2", loader, _PAYMENT)

    assert len(calls) == 2
    assert first.id == second.id == "pay-1"
    assert "Cache entry unreadable key=payment:pay-1" in caplog.text
    assert "Cache entry unreadable key=payment:pay-2" in caplog.text
    assert _PAYMENT.validate_json(backend.values["payment:pay-1"]) == make_payment()
