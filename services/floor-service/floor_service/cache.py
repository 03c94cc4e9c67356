from __future__ import annotations

import logging
import os
from typing import Callable, Iterable, Optional, Protocol, TypeVar

import pydantic
import redis
from pydantic import TypeAdapter

logger = logging.getLogger("floor-service.cache")

T = TypeVar("T")

DEFAULT_TTL_SECONDS = int(os.environ.get("CACHE_TTL_SECONDS", "60"))

ORDERS_LIST_PREFIX = "orders:list:"
PAYMENTS_LIST_PREFIX = "payments:list:"


def order_key(order_id: str) -> str:
    return f"order:{order_id}"


def payment_key(payment_id: str) -> str:
    return f"payment:{payment_id}"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_by_prefix(self, prefix: str) -> None: ...


class RedisCache:
    """CacheBackend on top of a redis client; backend errors count as misses."""

    def __init__(self, client: redis.Redis):
        self._client = client

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache read failed key=%s: %s", key, exc)
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as exc:
            logger.warning("Cache write failed key=%s: %s", key, exc)

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            logger.warning("Cache delete failed key=%s: %s", key, exc)

    def delete_by_prefix(self, prefix: str) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{prefix}*"))
            if keys:
                self._client.delete(*keys)
        except redis.RedisError as exc:
            logger.warning("Cache prefix delete failed prefix=%s: %s", prefix, exc)


class ReadThroughCache:
    """Explicit read-through wrapper the services call around their reads.

    With no backend every fetch goes straight to the loader.
    """

    def __init__(self, backend: Optional[CacheBackend] = None, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._backend = backend
        self._ttl = ttl_seconds

    def fetch(self, key: str, loader: Callable[[], T], adapter: TypeAdapter) -> T:
        if self._backend is None:
            return loader()

        cached = self._backend.get(key)
        if cached is not None:
            try:
                return adapter.validate_json(cached)
            except pydantic.ValidationError as exc:
                logger.warning("Cache entry unreadable key=%s: %s", key, exc)

        value = loader()
        self._backend.set(key, adapter.dump_json(value).decode("utf-8"), self._ttl)
        return value

    def invalidate(self, keys: Iterable[str] = (), prefixes: Iterable[str] = ()) -> None:
        if self._backend is None:
            return
        for key in keys:
            self._backend.delete(key)
        for prefix in prefixes:
            self._backend.delete_by_prefix(prefix)


def build_cache_backend() -> Optional[CacheBackend]:
    url = os.environ.get("REDIS_URL")
    if not url:
        return None
    client = redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis unavailable at %s, caching disabled: %s", url, exc)
        return None
    return RedisCache(client)
