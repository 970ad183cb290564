from datetime import UTC, datetime, timedelta

import pytest

from attribution.features.attribution.domain.models import Touchpoint, VisitRecord
from attribution.features.attribution.pipeline.journey.credit import (
    CREDIT_MODELS,
    allocate_credit,
)

CONVERTED_AT = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def _touchpoints(*hours_before, sources=None):
    sources = sources or ["google"] * len(hours_before)
    return [
        Touchpoint(
            touchpoint_number=n,
            visit=VisitRecord(
                visit_id=f"pageview:{n}",
                timestamp=CONVERTED_AT - timedelta(hours=hours),
                source=source,
                medium="cpc",
                campaign="spring",
            ),
            matched_by=["pageview_ip_match"],
        )
        for n, (hours, source) in enumerate(zip(hours_before, sources), start=1)
    ]


def _credits(allocation, model):
    return [c.credit for c in allocation[model]]


def test_every_model_is_reported():
    allocation = allocate_credit(_touchpoints(48, 2), 59.0, CONVERTED_AT)

    assert tuple(allocation) == CREDIT_MODELS


def test_first_and_last_click_take_everything():
    allocation = allocate_credit(
        _touchpoints(48, 24, 2, sources=["facebook", "google", "email"]), 80.0, CONVERTED_AT
    )

    first = allocation["first_click"]
    last = allocation["last_click"]
    assert [(c.source, c.credit, c.credit_percentage) for c in first] == [("facebook", 80.0, 100.0)]
    assert [(c.source, c.credit, c.credit_percentage) for c in last] == [("email", 80.0, 100.0)]


def test_linear_splits_evenly():
    allocation = allocate_credit(_touchpoints(48, 24, 2), 90.0, CONVERTED_AT)

    assert _credits(allocation, "linear") == [30.0, 30.0, 30.0]
    assert [c.credit_percentage for c in allocation["linear"]] == [33.33, 33.33, 33.33]


def test_time_decay_halves_per_half_life_before_conversion():
    allocation = allocate_credit(_touchpoints(336, 168, 0), 70.0, CONVERTED_AT)

    decay = allocation["time_decay"]
    assert [c.decay_weight for c in decay] == [0.25, 0.5, 1.0]
    assert [c.credit for c in decay] == [10.0, 20.0, 40.0]
    assert [c.credit_percentage for c in decay] == [14.29, 28.57, 57.14]


def test_time_decay_half_life_is_configurable():
    allocation = allocate_credit(_touchpoints(24, 0), 30.0, CONVERTED_AT, half_life_hours=24)

    assert _credits(allocation, "time_decay") == [10.0, 20.0]


@pytest.mark.parametrize(
    "hours_before, expected_credits, expected_roles",
    [
        ((5,), [100.0], ["only"]),
        ((48, 5), [50.0, 50.0], ["first", "last"]),
        ((96, 48, 24, 5), [40.0, 10.0, 10.0, 40.0], ["first", "middle", "middle", "last"]),
    ],
)
def test_position_based_split(hours_before, expected_credits, expected_roles):
    allocation = allocate_credit(_touchpoints(*hours_before), 100.0, CONVERTED_AT)

    position = allocation["position_based"]
    assert [c.credit for c in position] == expected_credits
    assert [c.position_role for c in position] == expected_roles


def test_missing_order_total_still_reports_shares():
    allocation = allocate_credit(_touchpoints(48, 2), None, CONVERTED_AT)

    assert _credits(allocation, "linear") == [0.0, 0.0]
    assert [c.credit_percentage for c in allocation["linear"]] == [50.0, 50.0]


def test_no_touchpoints_allocates_nothing():
    assert allocate_credit([], 59.0, CONVERTED_AT) == {}


def test_half_life_must_be_positive():
    with pytest.raises(ValueError):
        allocate_credit(_touchpoints(5), 59.0, CONVERTED_AT, half_life_hours=0)
