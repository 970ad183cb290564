from datetime import UTC, datetime, timedelta

from attribution.features.attribution.domain.models import TierMatch, VisitRecord
from attribution.features.attribution.pipeline.journey.service import assemble, score_confidence

CONVERTED_AT = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def _visit(visit_id, minutes_before, **overrides):
    visit = VisitRecord(
        visit_id=visit_id,
        timestamp=CONVERTED_AT - timedelta(minutes=minutes_before),
        ip_addresses=["203.0.113.5"],
        landing_page="https://shop.example.com/",
        source="google",
        campaign="spring",
        session_id="sess-1",
    )
    for key, value in overrides.items():
        setattr(visit, key, value)
    return visit


def _match(tier, priority, visits):
    return TierMatch(tier=tier, priority=priority, points=0, signal_values=[], visits=visits)


def test_confidence_components():
    assert score_confidence(["session_id_match", "pageview_ip_match"], 5, 0.5) == 80
    assert score_confidence(["pageview_ip_match"], 1, 12) == 12
    assert score_confidence(["pageview_ip_match"], 2, 200) == 8
    assert score_confidence([], 0, None) == 0


def test_confidence_is_capped():
    tiers = ["session_id_match", "primary_ip_match", "conversion_ip_match", "pageview_ip_match"]
    assert score_confidence(tiers, 40, 0.1) == 100


def test_journey_merges_tiers_and_orders_oldest_first():
    early = _visit("pageview:early", 90, source="facebook")
    late = _visit("pageview:late", 20)
    other_session = _visit("pageview:other", 45, session_id="sess-2", campaign=None)

    journey = assemble(
        [
            _match("pageview_ip_match", 4, [late, early, other_session]),
            _match("session_id_match", 1, [early, late]),
        ],
        CONVERTED_AT,
    )

    assert [tp.visit.visit_id for tp in journey.touchpoints] == [
        "pageview:early",
        "pageview:other",
        "pageview:late",
    ]
    assert [tp.touchpoint_number for tp in journey.touchpoints] == [1, 2, 3]
    assert journey.touchpoints[0].matched_by == ["session_id_match", "pageview_ip_match"]
    assert journey.touchpoints[1].matched_by == ["pageview_ip_match"]
    assert journey.first_touch.visit_id == "pageview:early"
    assert journey.last_touch.visit_id == "pageview:late"
    assert journey.unique_sessions == 2
    assert journey.unique_sources == 2
    assert journey.unique_campaigns == 1
    assert journey.duration_hours == round(70 / 60, 2)
    assert journey.hours_to_conversion == round(20 / 60, 2)
    assert journey.confidence == 35 + 10 + 8 + 20


def test_touchpoints_never_follow_the_conversion():
    journey = assemble(
        [_match("pageview_ip_match", 4, [_visit("pageview:after", -10), _visit("pageview:at", 0)])],
        CONVERTED_AT,
    )

    assert journey.touchpoints == []
    assert journey.touchpoint_count == 0
    assert journey.first_touch is None
    assert journey.hours_to_conversion is None
    assert journey.confidence == 0


def test_duplicate_visit_records_collapse():
    first = _visit("pageview:a", 30)
    duplicate = _visit("attribution_data_chunk:9#0", 30)

    journey = assemble([_match("pageview_ip_match", 4, [first, duplicate])], CONVERTED_AT)

    assert journey.touchpoint_count == 1
