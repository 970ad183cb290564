"""
Two-tier geolocation cache with a per-run external call budget.

Lookup order: the run context's in-process map, then `geo_cache:{ip}` in
the record store, then the external service while budget remains. A failed
lookup comes back as the failure sentinel; a spent call budget raises
`BudgetExhausted` and caches nothing.
"""

from __future__ import annotations

from typing import Protocol

from attribution.features.attribution.context import BudgetExhausted, RunContext
from attribution.features.attribution.domain.keys import geo_cache_key
from attribution.features.attribution.domain.models import GeoInfo
from attribution.features.attribution.domain.parsing import (
    format_timestamp,
    geo_to_dict,
    parse_geo,
)
from attribution.features.attribution.domain.signals import normalize_ip
from attribution.infrastructure.observability.logging import get_logger
from attribution.services.record_store import MalformedRecord, get_json, set_json

from .ipinfo_client import GeoLookupError

logger = get_logger(__name__)

SUCCESS_TTL_S = 86400
FAILURE_TTL_S = 3600


class GeoClient(Protocol):
    @property
    def configured(self) -> bool: ...

    async def geolocate(self, ip: str) -> GeoInfo: ...


class GeoLookupCache:
    def __init__(
        self,
        ctx: RunContext,
        client: GeoClient | None,
        success_ttl_s: int = SUCCESS_TTL_S,
        failure_ttl_s: int = FAILURE_TTL_S,
    ):
        self.ctx = ctx
        self.client = client
        self.success_ttl_s = success_ttl_s
        self.failure_ttl_s = failure_ttl_s

    async def lookup(self, ip: str) -> GeoInfo:
        canonical = normalize_ip(ip)
        if canonical is None:
            return GeoInfo.failed(ip)

        stats = self.ctx.geo_stats
        cached = self.ctx.geo_memory.get(canonical)
        if cached is not None:
            stats.memory_hits += 1
            return cached

        stored = await self._load(canonical)
        if stored is not None:
            stats.store_hits += 1
            self.ctx.geo_memory[canonical] = stored
            return stored

        stats.misses += 1
        if self.client is None or not self.client.configured:
            # Not cached in the store: a token may be configured on the next run
            return GeoInfo.failed(canonical)
        if self.ctx.geo_calls_remaining <= 0:
            stats.budget_denied += 1
            raise BudgetExhausted(f"geo call budget spent before looking up {canonical}")

        # The call counts against the budget whether or not it succeeds
        stats.api_calls += 1
        try:
            geo = await self.client.geolocate(canonical)
        except GeoLookupError as e:
            stats.api_failures += 1
            logger.warning("Geolocation lookup failed", ip=canonical, error=str(e))
            failed = GeoInfo.failed(canonical, format_timestamp(self.ctx.now()))
            self.ctx.geo_memory[canonical] = failed
            await self._store(canonical, failed, self.failure_ttl_s)
            return failed

        self.ctx.geo_memory[canonical] = geo
        await self._store(canonical, geo, self.success_ttl_s)
        return geo

    async def _load(self, ip: str) -> GeoInfo | None:
        try:
            data = await get_json(self.ctx.store, geo_cache_key(ip))
        except MalformedRecord as e:
            logger.debug("Ignoring malformed geo cache entry", ip=ip, reason=e.reason)
            return None
        if data is None:
            return None
        return parse_geo(data, ip) or GeoInfo.failed(ip)

    async def _store(self, ip: str, geo: GeoInfo, ttl_s: int) -> None:
        if not await set_json(self.ctx.store, geo_cache_key(ip), geo_to_dict(geo), ttl_s):
            logger.debug("Geo cache write failed", ip=ip)
