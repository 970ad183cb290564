"""
Journey assembly.

Merges the visits surfaced by every matching tier into one ordered,
deduplicated touchpoint list and scores how much the journey can be trusted.
"""

from __future__ import annotations

from datetime import datetime

from ...domain.models import SESSION_TIER, Journey, TierMatch, Touchpoint, VisitRecord

SESSION_POINTS = 35
CONFIDENCE_CAP = 100

# (minimum, points), checked highest first
TIER_COUNT_POINTS = ((4, 20), (3, 15), (2, 10))
TOUCHPOINT_POINTS = ((10, 25), (5, 15), (2, 8))
RECENCY_POINTS = ((1, 20), (24, 12), (168, 5))  # hours from last touch to conversion


def _dedupe_key(visit: VisitRecord) -> tuple[str, str, str]:
    return (
        visit.session_id or "",
        visit.timestamp.isoformat(),
        visit.ip_addresses[0] if visit.ip_addresses else "",
    )


def _hours(delta_seconds: float) -> float:
    return round(delta_seconds / 3600, 2)


def score_confidence(
    matched_tiers: list[str], touchpoint_count: int, hours_to_conversion: float | None
) -> int:
    score = 0
    if SESSION_TIER in matched_tiers:
        score += SESSION_POINTS

    for minimum, points in TIER_COUNT_POINTS:
        if len(matched_tiers) >= minimum:
            score += points
            break

    for minimum, points in TOUCHPOINT_POINTS:
        if touchpoint_count >= minimum:
            score += points
            break

    if hours_to_conversion is not None:
        for limit, points in RECENCY_POINTS:
            if hours_to_conversion <= limit:
                score += points
                break

    return min(score, CONFIDENCE_CAP)


def assemble(matched: list[TierMatch], conversion_time: datetime) -> Journey:
    """Touchpoints strictly before `conversion_time`, oldest first, numbered from 1."""
    merged: dict[tuple[str, str, str], tuple[VisitRecord, list[str]]] = {}
    for match in sorted(matched, key=lambda m: m.priority):
        for visit in match.visits:
            if visit.timestamp >= conversion_time:
                continue
            key = _dedupe_key(visit)
            if key not in merged:
                merged[key] = (visit, [match.tier])
            elif match.tier not in merged[key][1]:
                merged[key][1].append(match.tier)

    ordered = sorted(merged.values(), key=lambda item: (item[0].timestamp, item[0].visit_id))
    touchpoints = [
        Touchpoint(touchpoint_number=i, visit=visit, matched_by=tiers)
        for i, (visit, tiers) in enumerate(ordered, start=1)
    ]

    first = touchpoints[0].visit if touchpoints else None
    last = touchpoints[-1].visit if touchpoints else None
    hours_to_conversion = (
        _hours((conversion_time - last.timestamp).total_seconds()) if last else None
    )
    matched_tiers = sorted({m.tier for m in matched}, key=lambda t: _priority_of(matched, t))

    visits = [tp.visit for tp in touchpoints]
    return Journey(
        touchpoints=touchpoints,
        touchpoint_count=len(touchpoints),
        unique_sessions=len({v.session_id for v in visits if v.session_id}),
        unique_sources=len({v.source for v in visits}),
        unique_campaigns=len({v.campaign for v in visits if v.campaign}),
        unique_landing_pages=len({v.landing_page for v in visits}),
        duration_hours=_hours((last.timestamp - first.timestamp).total_seconds()) if first else 0.0,
        hours_to_conversion=hours_to_conversion,
        first_touch=first,
        last_touch=last,
        confidence=score_confidence(matched_tiers, len(touchpoints), hours_to_conversion)
        if touchpoints
        else 0,
    )


def _priority_of(matched: list[TierMatch], tier: str) -> int:
    return min(m.priority for m in matched if m.tier == tier)
