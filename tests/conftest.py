import os

# Settings() validates credentials at import time
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "https://test-redis.upstash.io")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "test-token")

import fnmatch  # noqa: E402
import json  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402

from attribution.features.attribution.context import RunContext  # noqa: E402
from attribution.features.attribution.domain.models import GeoInfo  # noqa: E402
from attribution.services.geo.ipinfo_client import GeoLookupError  # noqa: E402
from attribution.services.record_store import RecordStoreError  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


class FakeRecordStore:
    """Dict-backed record store; scan cursors are offsets into the sorted matching keys."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.set_calls: list[str] = []
        self.expire_calls: list[str] = []
        self.scan_calls = 0
        self.fail_scans_after: int | None = None

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl_s
        self.set_calls.append(key)
        return True

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self.data

    async def expire(self, key: str, ttl_s: int) -> bool:
        if key not in self.data:
            return False
        self.ttls[key] = ttl_s
        self.expire_calls.append(key)
        return True

    async def scan(self, cursor: str, match: str, count: int) -> tuple[str, list[str]]:
        self.scan_calls += 1
        if self.fail_scans_after is not None and self.scan_calls > self.fail_scans_after:
            raise RecordStoreError("store unavailable", operation="scan")
        keys = sorted(k for k in self.data if fnmatch.fnmatchcase(k, match))
        start = int(cursor)
        end = start + count
        return ("0" if end >= len(keys) else str(end)), keys[start:end]

    def put_json(self, key: str, value) -> None:
        self.data[key] = json.dumps(value)

    def load_json(self, key: str):
        return json.loads(self.data[key])

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


class FakeGeoClient:
    def __init__(self, locations: dict[str, GeoInfo] | None = None, fail: bool = False):
        self.locations = locations or {}
        self.fail = fail
        self.calls: list[str] = []
        self.configured = True

    async def geolocate(self, ip: str) -> GeoInfo:
        self.calls.append(ip)
        if self.fail or ip not in self.locations:
            raise GeoLookupError("service unavailable", status_code=503)
        return self.locations[ip]


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_ctx(store, clock):
    def _make(budget_seconds: float = 25.0, geo_call_budget: int = 10, now: datetime = NOW):
        return RunContext.create(
            store,
            budget_seconds,
            concurrency_limit=5,
            geo_call_budget=geo_call_budget,
            clock=clock,
            now=lambda: now,
        )

    return _make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def visit_data():
    """Raw collector-style visit payload `minutes_ago` before NOW."""

    def _make(minutes_ago: float, **fields):
        data = {
            "timestamp": (NOW - timedelta(minutes=minutes_ago)).isoformat().replace("+00:00", "Z"),
            "ip_address": "203.0.113.5",
            "landing_page": "https://shop.example.com/",
            "source": "google",
            "utm_campaign": "spring",
        }
        data.update(fields)
        return {k: v for k, v in data.items() if v is not None}

    return _make


@pytest.fixture
def conversion_data():
    def _make(minutes_ago: float = 0, **fields):
        data = {
            "email": "buyer@example.com",
            "timestamp": (NOW - timedelta(minutes=minutes_ago)).isoformat().replace("+00:00", "Z"),
            "order_id": "1001",
            "order_total": 59.0,
        }
        data.update(fields)
        return {k: v for k, v in data.items() if v is not None}

    return _make


@pytest.fixture
def geo():
    def _make(ip: str, city="Singapore", region="Central", country="SG", isp="Singtel", **extra):
        return GeoInfo(ip=ip, city=city, region=region, country=country, isp=isp, **extra)

    return _make


@pytest.fixture
def geo_client():
    """Factory for fake geolocation clients."""
    return FakeGeoClient
