"""
Identity resolver.

Evaluates every deterministic tier for a conversion and lets the highest
priority tier with an eligible visit win outright; scores never reorder
tiers. Geographic correlation runs only when all deterministic tiers come
back empty. A geo pass cut short by the run budget is reported as
`budget_exhausted` rather than as a miss.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from attribution.infrastructure.observability.logging import get_logger

from ...context import BudgetExhausted
from ...domain.models import FIRST_TOUCH, LAST_TOUCH, ConversionRecord, TierMatch, VisitRecord
from ..indexing.repository import IndexRepository
from .tiers import DETERMINISTIC_TIERS, GeographicTier, LookbackWindow, MatchTier

logger = get_logger(__name__)

ATTRIBUTION_MODELS = (FIRST_TOUCH, LAST_TOUCH)


@dataclass(slots=True)
class Resolution:
    conversion_key: str
    model: str
    winner: TierMatch | None = None
    selected_visit: VisitRecord | None = None
    matches: list[TierMatch] = field(default_factory=list)
    skipped_tiers: list[str] = field(default_factory=list)
    budget_exhausted: bool = False

    @property
    def matched(self) -> bool:
        return self.winner is not None


def select_visit(visits: Sequence[VisitRecord], model: str) -> VisitRecord:
    """
    first_touch -> oldest visit, last_touch -> newest visit.
    Equal timestamps resolve to the smallest visit_id in both models.
    """
    if model == FIRST_TOUCH:
        return min(visits, key=lambda v: (v.timestamp, v.visit_id))
    if model == LAST_TOUCH:
        newest = max(v.timestamp for v in visits)
        return min((v for v in visits if v.timestamp == newest), key=lambda v: v.visit_id)
    raise ValueError(f"Unknown attribution model '{model}'")


class IdentityResolver:
    def __init__(
        self,
        repository: IndexRepository,
        tiers: Sequence[MatchTier] = DETERMINISTIC_TIERS,
        geo_tier: GeographicTier | None = None,
    ):
        self.repository = repository
        self.tiers = sorted(tiers, key=lambda tier: tier.priority)
        self.geo_tier = geo_tier

    async def resolve(
        self,
        conversion: ConversionRecord,
        model: str = FIRST_TOUCH,
        lookback_days: int = 14,
    ) -> Resolution:
        if model not in ATTRIBUTION_MODELS:
            raise ValueError(f"Unknown attribution model '{model}'")

        window = LookbackWindow.lookback(conversion, lookback_days)
        resolution = Resolution(conversion_key=conversion.key, model=model)

        active = []
        for tier in self.tiers:
            if tier.signal_values(conversion):
                active.append(tier)
            else:
                resolution.skipped_tiers.append(tier.name)

        # All lookups go out together; priority order is applied afterwards
        results = await asyncio.gather(
            *(tier.evaluate(conversion, self.repository, window) for tier in active)
        )
        resolution.matches = [match for match in results if match is not None]

        if not resolution.matches and self.geo_tier is not None:
            try:
                geo_match = await self.geo_tier.evaluate(conversion, self.repository, window)
            except BudgetExhausted as e:
                logger.info("Resolution deferred", key=conversion.key, reason=str(e))
                resolution.budget_exhausted = True
                return resolution
            if geo_match is not None:
                resolution.matches = [geo_match]

        if resolution.matches:
            resolution.winner = min(resolution.matches, key=lambda match: match.priority)
            resolution.selected_visit = select_visit(resolution.winner.visits, model)

        logger.debug(
            "Conversion resolved",
            key=conversion.key,
            model=model,
            method=resolution.winner.tier if resolution.winner else None,
            matched_tiers=[match.tier for match in resolution.matches],
            skipped_tiers=resolution.skipped_tiers,
            enhanced=conversion.has_enhanced_signals,
        )
        return resolution
