"""
Geographic correlation.

Fallback used only when no deterministic tier matched: compare where the
conversion's IPs geolocate against where recent candidate visits did, and
accept the most recent visit whose agreement score clears the threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from attribution.infrastructure.observability.logging import get_logger

from ...context import BudgetExhausted, RunBudget
from ...domain.models import ConversionRecord, GeoInfo, VisitRecord
from .isp import isps_agree

logger = get_logger(__name__)

ISP_POINTS = 45
CITY_POINTS = 25
REGION_POINTS = 20
COUNTRY_POINTS = 10

HIGH_BAND = 80
MEDIUM_BAND = 60
LOW_BAND = 40


@dataclass(frozen=True, slots=True)
class GeoWindow:
    """Candidate visits must fall `start_minutes`..`end_minutes` before the conversion."""

    start_minutes: int
    end_minutes: int
    label: str

    def earliest(self, conversion_time: datetime) -> datetime:
        return conversion_time - timedelta(minutes=self.end_minutes)

    def contains(self, visit_time: datetime, conversion_time: datetime) -> bool:
        gap = conversion_time - visit_time
        if gap <= timedelta(0):
            return False
        return timedelta(minutes=self.start_minutes) <= gap <= timedelta(minutes=self.end_minutes)


WINDOW_24H = GeoWindow(0, 24 * 60, "24h")
WINDOW_90M = GeoWindow(0, 90, "90m")
STAGED_WINDOWS = (
    GeoWindow(0, 15, "phase_1_0_15m"),
    GeoWindow(15, 45, "phase_2_15_45m"),
    GeoWindow(45, 120, "phase_3_45_120m"),
)


@dataclass(slots=True)
class GeoScore:
    score: int
    isp_match: bool
    city_match: bool
    region_match: bool
    country_match: bool


@dataclass(slots=True)
class GeoMatch:
    visit: VisitRecord
    score: int
    band: str
    conversion_ip: str
    gap_minutes: float
    window: str
    detail: GeoScore


class GeoLookup(Protocol):
    async def lookup(self, ip: str) -> GeoInfo: ...


def _same(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.strip().casefold() == b.strip().casefold()


def score_pair(conversion_geo: GeoInfo, visit_geo: GeoInfo) -> GeoScore | None:
    """Agreement score out of 100; None when either side is the failure sentinel."""
    if conversion_geo.lookup_failed or visit_geo.lookup_failed:
        return None
    detail = GeoScore(
        score=0,
        isp_match=isps_agree(conversion_geo.isp, visit_geo.isp, conversion_geo.asn, visit_geo.asn),
        city_match=_same(conversion_geo.city, visit_geo.city),
        region_match=_same(conversion_geo.region, visit_geo.region),
        country_match=_same(conversion_geo.country, visit_geo.country),
    )
    detail.score = (
        ISP_POINTS * detail.isp_match
        + CITY_POINTS * detail.city_match
        + REGION_POINTS * detail.region_match
        + COUNTRY_POINTS * detail.country_match
    )
    return detail


def band_for(score: int) -> str | None:
    if score >= HIGH_BAND:
        return "high"
    if score >= MEDIUM_BAND:
        return "medium"
    if score >= LOW_BAND:
        return "low"
    return None


class GeographicCorrelator:
    def __init__(
        self,
        geo: GeoLookup,
        acceptance_score: int = MEDIUM_BAND,
        budget: RunBudget | None = None,
    ):
        self.geo = geo
        self.acceptance_score = max(acceptance_score, LOW_BAND)
        self.budget = budget

    async def correlate(
        self,
        conversion: ConversionRecord,
        candidate_visits: list[VisitRecord],
        window: GeoWindow = WINDOW_24H,
    ) -> GeoMatch | None:
        """
        Greedy: candidates inside the window are tried smallest-gap first and
        the first one clearing the acceptance score wins. Raises
        BudgetExhausted when the run stops before every candidate was tried.
        """
        conversion_geos: list[GeoInfo] = []
        for ip in conversion.all_ips:
            geo = await self.geo.lookup(ip)
            if not geo.lookup_failed:
                conversion_geos.append(geo)
        if not conversion_geos:
            logger.debug("Geo correlation skipped - no usable conversion geo", key=conversion.key)
            return None

        eligible = [
            v for v in candidate_visits if window.contains(v.timestamp, conversion.timestamp)
        ]
        eligible.sort(key=lambda v: (conversion.timestamp - v.timestamp, v.visit_id))

        for visit in eligible:
            if self.budget is not None and self.budget.expired():
                logger.info("Geo correlation stopped - budget exhausted", key=conversion.key)
                raise BudgetExhausted(f"run budget spent while correlating {conversion.key}")

            visit_geo = await self._visit_geo(visit)
            if visit_geo is None:
                continue

            for conversion_geo in conversion_geos:
                detail = score_pair(conversion_geo, visit_geo)
                if detail is None or detail.score < self.acceptance_score:
                    continue
                return GeoMatch(
                    visit=visit,
                    score=detail.score,
                    band=band_for(detail.score),
                    conversion_ip=conversion_geo.ip,
                    gap_minutes=round(
                        (conversion.timestamp - visit.timestamp).total_seconds() / 60, 2
                    ),
                    window=window.label,
                    detail=detail,
                )
        return None

    async def _visit_geo(self, visit: VisitRecord) -> GeoInfo | None:
        if visit.geo is not None:
            return None if visit.geo.lookup_failed else visit.geo
        if not visit.ip_addresses:
            return None
        geo = await self.geo.lookup(visit.ip_addresses[0])
        return None if geo.lookup_failed else geo
