"""
Conversion value allocation across journey touchpoints.

    first_click     everything to the oldest touchpoint
    last_click      everything to the newest touchpoint
    linear          equal shares
    time_decay      weight 2^(-hours_before_conversion / half_life), normalised
    position_based  40% first, 40% last, 20% split over the middle
                    (one touchpoint takes 100%, two take 50% each)

Decay is measured against the conversion time, so re-running a pass later
gives the same split.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ...domain.models import Touchpoint

FIRST_CLICK = "first_click"
LAST_CLICK = "last_click"
LINEAR = "linear"
TIME_DECAY = "time_decay"
POSITION_BASED = "position_based"
CREDIT_MODELS = (FIRST_CLICK, LAST_CLICK, LINEAR, TIME_DECAY, POSITION_BASED)

DEFAULT_HALF_LIFE_HOURS = 168.0
POSITION_ENDS_SHARE = 0.4


@dataclass(slots=True)
class TouchpointCredit:
    touchpoint_number: int
    visit_id: str
    source: str
    medium: str | None
    campaign: str | None
    share: float
    credit: float
    decay_weight: float | None = None
    position_role: str | None = None

    @property
    def credit_percentage(self) -> float:
        return round(self.share * 100, 2)


def _credit(
    touchpoint: Touchpoint,
    share: float,
    value: float,
    decay_weight: float | None = None,
    position_role: str | None = None,
) -> TouchpointCredit:
    return TouchpointCredit(
        touchpoint_number=touchpoint.touchpoint_number,
        visit_id=touchpoint.visit.visit_id,
        source=touchpoint.visit.source,
        medium=touchpoint.visit.medium,
        campaign=touchpoint.visit.campaign,
        share=share,
        credit=round(value * share, 2),
        decay_weight=decay_weight,
        position_role=position_role,
    )


def _time_decay(
    touchpoints: list[Touchpoint], value: float, conversion_time: datetime, half_life: float
) -> list[TouchpointCredit]:
    weights = []
    for tp in touchpoints:
        hours_before = max(0.0, (conversion_time - tp.visit.timestamp).total_seconds() / 3600)
        weights.append(2 ** (-hours_before / half_life))
    total = sum(weights)
    return [
        _credit(tp, weight / total, value, decay_weight=round(weight, 6))
        for tp, weight in zip(touchpoints, weights)
    ]


def _position_based(touchpoints: list[Touchpoint], value: float) -> list[TouchpointCredit]:
    if len(touchpoints) == 1:
        return [_credit(touchpoints[0], 1.0, value, position_role="only")]
    if len(touchpoints) == 2:
        return [
            _credit(touchpoints[0], 0.5, value, position_role="first"),
            _credit(touchpoints[1], 0.5, value, position_role="last"),
        ]
    middle = touchpoints[1:-1]
    middle_share = (1 - 2 * POSITION_ENDS_SHARE) / len(middle)
    return [
        _credit(touchpoints[0], POSITION_ENDS_SHARE, value, position_role="first"),
        *(_credit(tp, middle_share, value, position_role="middle") for tp in middle),
        _credit(touchpoints[-1], POSITION_ENDS_SHARE, value, position_role="last"),
    ]


def allocate_credit(
    touchpoints: list[Touchpoint],
    conversion_value: float | None,
    conversion_time: datetime,
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
) -> dict[str, list[TouchpointCredit]]:
    """
    Split `conversion_value` over `touchpoints` (oldest first) under every
    credit model. A journey without touchpoints allocates nothing; a missing
    order value is treated as 0 so the shares are still reported.
    """
    if not touchpoints:
        return {}
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")

    value = float(conversion_value or 0.0)
    share = 1 / len(touchpoints)
    return {
        FIRST_CLICK: [_credit(touchpoints[0], 1.0, value)],
        LAST_CLICK: [_credit(touchpoints[-1], 1.0, value)],
        LINEAR: [_credit(tp, share, value) for tp in touchpoints],
        TIME_DECAY: _time_decay(touchpoints, value, conversion_time, half_life_hours),
        POSITION_BASED: _position_based(touchpoints, value),
    }
