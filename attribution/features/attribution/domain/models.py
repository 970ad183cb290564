"""
Domain models for the attribution feature.

These dataclasses describe visits, conversions, index entries and
attribution outcomes. They carry no store or network logic so the
pipeline stages, repositories and jobs can share them freely.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Fixed tier names, highest priority first.
SESSION_TIER = "session_id_match"
PRIMARY_IP_TIER = "primary_ip_match"
CONVERSION_IP_TIER = "conversion_ip_match"
PAGEVIEW_IP_TIER = "pageview_ip_match"
DEVICE_TIER = "device_signature_match"
SCREEN_TIER = "screen_hash_match"
WEBGL_TIER = "webgl_match"
GEO_TIER = "geographic_match"

FIRST_TOUCH = "first_touch"
LAST_TOUCH = "last_touch"


@dataclass(slots=True)
class GeoInfo:
    """Coarse geolocation for one IP. `lookup_failed` marks the sentinel."""

    ip: str
    city: str | None = None
    region: str | None = None
    country: str | None = None
    isp: str | None = None
    asn: str | None = None
    timezone: str | None = None
    looked_up_at: str | None = None
    lookup_failed: bool = False

    @classmethod
    def failed(cls, ip: str, looked_up_at: str | None = None) -> "GeoInfo":
        return cls(ip=ip, looked_up_at=looked_up_at, lookup_failed=True)


@dataclass(slots=True)
class VisitRecord:
    visit_id: str
    timestamp: datetime
    ip_addresses: list[str] = field(default_factory=list)
    landing_page: str = "unknown"
    source: str = "direct"
    medium: str | None = None
    campaign: str | None = None
    content: str | None = None
    term: str | None = None
    referrer_url: str | None = None
    session_id: str | None = None
    device_signature: str | None = None
    screen_hash: str | None = None
    webgl_hash: str | None = None
    geo: GeoInfo | None = None


@dataclass(slots=True)
class ConversionRecord:
    key: str
    email: str
    timestamp: datetime
    order_id: str | None = None
    order_total: float | None = None
    primary_ips: list[str] = field(default_factory=list)
    checkout_ips: list[str] = field(default_factory=list)
    pageview_ips: list[str] = field(default_factory=list)
    session_id: str | None = None
    device_signature: str | None = None
    screen_hash: str | None = None
    webgl_hash: str | None = None
    attribution: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_enhanced_signals(self) -> bool:
        """Legacy records only carry a pageview IP; newer ones carry at least one of these."""
        return bool(
            self.session_id
            or self.primary_ips
            or self.checkout_ips
            or self.device_signature
            or self.screen_hash
            or self.webgl_hash
        )

    @property
    def all_ips(self) -> list[str]:
        seen: list[str] = []
        for ip in [*self.primary_ips, *self.checkout_ips, *self.pageview_ips]:
            if ip not in seen:
                seen.append(ip)
        return seen


@dataclass(slots=True)
class IndexEntry:
    """One persisted signal index entry (visits most recent first)."""

    key: str
    signal_type: str
    signal_value: str
    visits: list[VisitRecord]
    pageview_count: int
    truncated: bool
    latest_timestamp: datetime | None
    earliest_timestamp: datetime | None
    session_ids: list[str]
    landing_pages: list[str]
    sources: list[str]
    created_at: datetime | None


@dataclass(slots=True)
class IndexBuildProgress:
    """Persisted checkpoint for a multi-invocation index build."""

    build_id: str
    phase: str = "scan"  # scan -> verification -> publish -> complete
    completed_patterns: list[str] = field(default_factory=list)
    cursor: str = "0"
    verification_completed_patterns: list[str] = field(default_factory=list)
    verification_cursor: str = "0"
    verification_pages: int = 0
    verification_complete: bool = False
    shard_keys: list[str] = field(default_factory=list)
    publish_offset: int = 0
    signals_total: int = 0
    signals_published: int = 0
    keys_processed: int = 0
    visits_processed: int = 0
    malformed_records: int = 0
    invocations: int = 0
    data_watermark: str | None = None
    started_at: str | None = None
    updated_at: str | None = None
    is_complete: bool = False


@dataclass(slots=True)
class TierMatch:
    """Visits surfaced by one tier for one conversion."""

    tier: str
    priority: int
    points: int
    signal_values: list[str]
    visits: list[VisitRecord]
    geo_score: int | None = None
    geo_band: str | None = None


@dataclass(slots=True)
class Touchpoint:
    touchpoint_number: int
    visit: VisitRecord
    matched_by: list[str]


@dataclass(slots=True)
class Journey:
    touchpoints: list[Touchpoint]
    touchpoint_count: int
    unique_sessions: int
    unique_sources: int
    unique_campaigns: int
    unique_landing_pages: int
    duration_hours: float
    hours_to_conversion: float | None
    first_touch: VisitRecord | None
    last_touch: VisitRecord | None
    confidence: int
