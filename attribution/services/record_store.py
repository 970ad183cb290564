"""
Record store facade.

Every other component talks to persistence through the small capability
named here (get / set-with-expiry / expire / scan), so the pooled Redis
client can be swapped for the in-memory fake in tests.
"""

import json
from typing import Any, Protocol

from attribution.infrastructure.observability.logging import get_logger
from attribution.services.infrastructure.redis_client import (
    TERMINAL_CURSOR,
    RecordStoreError,
    fast_redis,
)

logger = get_logger(__name__)

__all__ = [
    "TERMINAL_CURSOR",
    "MalformedRecord",
    "RecordStore",
    "RecordStoreError",
    "dumps",
    "get_json",
    "set_json",
    "health_check",
]


class MalformedRecord(ValueError):
    """Stored value could not be parsed into the expected record shape."""

    def __init__(self, key: str | None, reason: str):
        super().__init__(f"{key or '<inline>'}: {reason}")
        self.key = key
        self.reason = reason


class RecordStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def expire(self, key: str, ttl_s: int) -> bool: ...

    async def scan(self, cursor: str, match: str, count: int) -> tuple[str, list[str]]: ...


def dumps(value: Any) -> str:
    """Deterministic JSON encoding - identical input always yields identical bytes."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


async def get_json(store: RecordStore, key: str) -> Any | None:
    """Read and decode a JSON value. Missing keys return None."""
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedRecord(key, f"invalid JSON ({e})") from e


async def set_json(store: RecordStore, key: str, value: Any, ttl_s: int | None = None) -> bool:
    return await store.set_with_ttl(key, dumps(value), ttl_s)


async def health_check(store: RecordStore | None = None) -> dict:
    """Round-trip a short-lived key through the store."""
    store = store or fast_redis
    try:
        test_key = "attribution_health_check"
        test_value = "ok"

        set_success = await store.set_with_ttl(test_key, test_value, 10)
        get_result = await store.get(test_key) if set_success else None
        get_success = get_result == test_value

        if set_success:
            await store.delete(test_key)

        return {
            "healthy": set_success and get_success,
            "set_get_operations": set_success and get_success,
            "service": "record_store",
        }

    except Exception as e:
        logger.error("Record store health check failed", error=str(e))
        return {"healthy": False, "error": str(e), "service": "record_store"}
