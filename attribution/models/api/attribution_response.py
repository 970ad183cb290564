# attribution/models/api/attribution_response.py
"""
Attribution operation response models.
Also the shape of the `attribution` sub-record written back to conversions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class VisitResponse(BaseModel):
    """Summary of one stored page visit."""

    visit_id: str = Field(..., description="Store key of the visit (with #n for chunk members)")
    timestamp: datetime = Field(..., description="When the visit happened")
    ip_addresses: list[str] = Field(default_factory=list, description="Normalised visit IPs")
    landing_page: str = Field(..., description="Landing page URL")
    source: str = Field(..., description="Traffic source")
    medium: str | None = Field(None, description="UTM medium")
    campaign: str | None = Field(None, description="UTM campaign")
    content: str | None = Field(None, description="UTM content")
    term: str | None = Field(None, description="UTM term")
    referrer_url: str | None = Field(None, description="Referrer")
    session_id: str | None = Field(None, description="Session token")
    device_signature: str | None = Field(None, description="Device fingerprint")
    screen_hash: str | None = Field(None, description="Screen hash")
    webgl_hash: str | None = Field(None, description="WebGL signature")


class TouchpointResponse(VisitResponse):
    """One numbered step of a journey."""

    touchpoint_number: int = Field(..., ge=1, description="1-based position, oldest first")
    matched_by: list[str] = Field(..., description="Tiers that surfaced this visit")


class JourneySummaryResponse(BaseModel):
    """Journey statistics."""

    touchpoint_count: int = Field(..., description="Number of touchpoints")
    unique_sessions: int = Field(..., description="Distinct session tokens")
    unique_sources: int = Field(..., description="Distinct traffic sources")
    unique_campaigns: int = Field(..., description="Distinct campaigns")
    unique_landing_pages: int = Field(..., description="Distinct landing pages")
    duration_hours: float = Field(..., description="First to last touch")
    hours_to_conversion: float | None = Field(None, description="Last touch to conversion")
    confidence: int = Field(..., ge=0, le=100, description="Journey confidence (0-100)")


class CreditResponse(BaseModel):
    """Share of the conversion value given to one touchpoint under one model."""

    touchpoint_number: int = Field(..., ge=1, description="Journey position")
    visit_id: str = Field(..., description="Credited visit")
    source: str = Field(..., description="Traffic source")
    medium: str | None = Field(None, description="UTM medium")
    campaign: str | None = Field(None, description="UTM campaign")
    credit: float = Field(..., description="Order value credited")
    credit_percentage: float = Field(..., description="Share of the order value")
    decay_weight: float | None = Field(None, description="time_decay weight")
    position_role: str | None = Field(None, description="position_based role")


class AttributionResponse(BaseModel):
    """Outcome of attributing one conversion."""

    conversion_key: str = Field(..., description="Store key of the conversion")
    matched: bool = Field(..., description="Whether any tier matched")
    method: str | None = Field(None, description="Winning tier")
    priority: int | None = Field(None, description="Winning tier priority (1 = strongest)")
    points: int = Field(default=0, description="Winning tier points")
    model: str = Field(..., description="first_touch or last_touch")
    confidence: int = Field(default=0, ge=0, le=100, description="Journey confidence")
    geo_score: int | None = Field(None, description="Geographic agreement score")
    geo_band: str | None = Field(None, description="high / medium / low")
    matched_visit: VisitResponse | None = Field(None, description="Credited touchpoint")
    touchpoints: list[TouchpointResponse] = Field(default_factory=list, description="Journey")
    journey: JourneySummaryResponse | None = Field(None, description="Journey statistics")
    matched_tiers: list[str] = Field(default_factory=list, description="Every tier that matched")
    conversion_value: float | None = Field(None, description="Order total being credited")
    credit_allocation: dict[str, list[CreditResponse]] = Field(
        default_factory=dict, description="Per-model split of the order total over the journey"
    )
    improvement_type: str | None = Field(None, description="Comparison with the prior result")
    previous_attribution: dict[str, Any] | None = Field(
        None, description="Attribution in place before this pass"
    )
    persisted: bool = Field(default=False, description="Whether the conversion was rewritten")
    budget_exhausted: bool = Field(
        default=False, description="Run budget ran out before resolution finished"
    )
    resolved_at: datetime | None = Field(None, description="When this pass ran")


class IndexBuildResponse(BaseModel):
    """Result of one index build invocation."""

    build_id: str = Field(..., description="Build identifier")
    complete: bool = Field(..., description="Whether the whole build is finished")
    phase: str = Field(..., description="Phase the build is in after this invocation")
    stats: dict[str, Any] = Field(..., description="Work done by this invocation")
    progress: dict[str, Any] = Field(..., description="Persisted checkpoint")


class RecoveryPassResponse(BaseModel):
    """Result of one recovery pass invocation."""

    pass_name: str = Field(..., description="Recovery pass preset")
    complete: bool = Field(..., description="Whether the conversion scan finished")
    cursor: str = Field(..., description="Saved scan cursor")
    scanned: int = Field(default=0, description="Conversion keys scanned")
    processed: int = Field(default=0, description="Conversions resolved")
    improved: int = Field(default=0, description="Conversions rewritten with a better result")
    unmatched: int = Field(default=0, description="Conversions with no match")
    skipped_marked: int = Field(default=0, description="Skipped - already processed")
    skipped_attributed: int = Field(default=0, description="Skipped - already attributed")
    skipped_out_of_window: int = Field(default=0, description="Skipped - outside the age window")
    malformed: int = Field(default=0, description="Unparsable conversion records")
    budget_exhausted: bool = Field(default=False, description="Stopped on the time budget")
    error: str | None = Field(None, description="Store error that stopped the pass")
    geo_stats: dict[str, int] = Field(default_factory=dict, description="Geo cache counters")
