"""
Matching tiers.

Each tier is one strategy with the same `evaluate` interface; the resolver
walks them in priority order. Adding or removing a tier is a change to
DETERMINISTIC_TIERS, not to the resolver.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from ...domain import models
from ...domain.keys import (
    SIGNAL_DEVICE,
    SIGNAL_HOUR,
    SIGNAL_IP,
    SIGNAL_SCREEN,
    SIGNAL_SESSION,
    SIGNAL_WEBGL,
    hour_bucket,
)
from ...domain.models import ConversionRecord, TierMatch, VisitRecord
from ..geo.correlator import WINDOW_24H, GeographicCorrelator, GeoWindow
from ..indexing.repository import IndexRepository


@dataclass(slots=True)
class LookbackWindow:
    """Eligible visits satisfy `start <= timestamp < end`."""

    start: datetime
    end: datetime

    @classmethod
    def lookback(cls, conversion: ConversionRecord, lookback_days: int) -> "LookbackWindow":
        return cls(conversion.timestamp - timedelta(days=lookback_days), conversion.timestamp)

    def contains(self, visit: VisitRecord) -> bool:
        return self.start <= visit.timestamp < self.end


class MatchTier(Protocol):
    name: str
    priority: int
    points: int

    def signal_values(self, conversion: ConversionRecord) -> list[str]: ...

    async def evaluate(
        self, conversion: ConversionRecord, repository: IndexRepository, window: LookbackWindow
    ) -> TierMatch | None: ...


def _dedupe(visits: list[VisitRecord]) -> list[VisitRecord]:
    seen: dict[str, VisitRecord] = {}
    for visit in visits:
        seen.setdefault(visit.visit_id, visit)
    return list(seen.values())


@dataclass(frozen=True, slots=True)
class SignalTier:
    """Deterministic tier: one index lookup per signal value the conversion carries."""

    name: str
    priority: int
    points: int
    signal_type: str
    extract: Callable[[ConversionRecord], list[str]]

    def signal_values(self, conversion: ConversionRecord) -> list[str]:
        return [value for value in self.extract(conversion) if value]

    async def evaluate(
        self, conversion: ConversionRecord, repository: IndexRepository, window: LookbackWindow
    ) -> TierMatch | None:
        values = self.signal_values(conversion)
        if not values:
            return None

        entries = await asyncio.gather(
            *(repository.load_entry(self.signal_type, value) for value in values)
        )
        matched_values = []
        visits: list[VisitRecord] = []
        for value, entry in zip(values, entries):
            if entry is None:
                continue
            eligible = [visit for visit in entry.visits if window.contains(visit)]
            if eligible:
                matched_values.append(value)
                visits.extend(eligible)

        if not visits:
            return None
        return TierMatch(
            tier=self.name,
            priority=self.priority,
            points=self.points,
            signal_values=matched_values,
            visits=_dedupe(visits),
        )


def _single(value: str | None) -> list[str]:
    return [value] if value else []


def _checkout_ips(conversion: ConversionRecord) -> list[str]:
    return [ip for ip in conversion.checkout_ips if ip not in conversion.primary_ips]


def _pageview_ips(conversion: ConversionRecord) -> list[str]:
    earlier = set(conversion.primary_ips) | set(conversion.checkout_ips)
    return [ip for ip in conversion.pageview_ips if ip not in earlier]


DETERMINISTIC_TIERS: tuple[SignalTier, ...] = (
    SignalTier(models.SESSION_TIER, 1, 300, SIGNAL_SESSION, lambda c: _single(c.session_id)),
    SignalTier(models.PRIMARY_IP_TIER, 2, 280, SIGNAL_IP, lambda c: list(c.primary_ips)),
    SignalTier(models.CONVERSION_IP_TIER, 3, 260, SIGNAL_IP, _checkout_ips),
    SignalTier(models.PAGEVIEW_IP_TIER, 4, 240, SIGNAL_IP, _pageview_ips),
    SignalTier(models.DEVICE_TIER, 5, 220, SIGNAL_DEVICE, lambda c: _single(c.device_signature)),
    SignalTier(models.SCREEN_TIER, 6, 200, SIGNAL_SCREEN, lambda c: _single(c.screen_hash)),
    SignalTier(models.WEBGL_TIER, 7, 180, SIGNAL_WEBGL, lambda c: _single(c.webgl_hash)),
)


class GeographicTier:
    """
    Last-resort tier: candidates from the hourly buckets, scored by geo
    agreement. Windows are tried in order; the first one that yields an
    accepted candidate wins.
    """

    name = models.GEO_TIER
    priority = 8
    points = 100

    def __init__(
        self, correlator: GeographicCorrelator, windows: Sequence[GeoWindow] = (WINDOW_24H,)
    ):
        self.correlator = correlator
        self.windows = tuple(windows)

    def signal_values(self, conversion: ConversionRecord) -> list[str]:
        return conversion.all_ips

    def hour_buckets(self, conversion: ConversionRecord) -> list[str]:
        earliest = min(window.earliest(conversion.timestamp) for window in self.windows)
        cursor = earliest.replace(minute=0, second=0, microsecond=0)
        buckets = []
        while cursor <= conversion.timestamp:
            buckets.append(hour_bucket(cursor))
            cursor += timedelta(hours=1)
        return buckets

    async def candidates(
        self, conversion: ConversionRecord, repository: IndexRepository, window: LookbackWindow
    ) -> list[VisitRecord]:
        entries = await asyncio.gather(
            *(repository.load_entry(SIGNAL_HOUR, bucket) for bucket in self.hour_buckets(conversion))
        )
        visits = [
            visit
            for entry in entries
            if entry is not None
            for visit in entry.visits
            if window.contains(visit)
        ]
        return _dedupe(visits)

    async def evaluate(
        self, conversion: ConversionRecord, repository: IndexRepository, window: LookbackWindow
    ) -> TierMatch | None:
        if not self.signal_values(conversion):
            return None
        candidates = await self.candidates(conversion, repository, window)
        if not candidates:
            return None
        match = None
        for geo_window in self.windows:
            match = await self.correlator.correlate(conversion, candidates, geo_window)
            if match is not None:
                break
        if match is None:
            return None
        return TierMatch(
            tier=self.name,
            priority=self.priority,
            points=self.points,
            signal_values=[match.conversion_ip],
            visits=[match.visit],
            geo_score=match.score,
            geo_band=match.band,
        )
