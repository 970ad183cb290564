"""
Attribution service - the exposed operations.

    build_indexes        one bounded invocation of the index build
    resolve_attribution  attribute a stored conversion and write the result back
    query_index          visits sharing one signal value

Every operation is a function of store state plus explicit arguments; the
job layer turns settings into the constructor arguments used here.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict
from datetime import datetime
from typing import Any

from attribution.infrastructure.observability.logging import get_logger
from attribution.models.api.attribution_request import QueryIndexRequest, ResolveOptions
from attribution.models.api.attribution_response import (
    AttributionResponse,
    CreditResponse,
    IndexBuildResponse,
    JourneySummaryResponse,
    TouchpointResponse,
    VisitResponse,
)
from attribution.services.geo.geo_cache import (
    FAILURE_TTL_S,
    SUCCESS_TTL_S,
    GeoClient,
    GeoLookupCache,
)

from ..context import RunContext
from ..domain.models import ConversionRecord, IndexBuildProgress, Journey, VisitRecord
from ..domain.parsing import visit_to_dict
from ..pipeline.geo.correlator import MEDIUM_BAND, WINDOW_24H, GeographicCorrelator, GeoWindow
from ..pipeline.indexing.repository import IndexRepository
from ..pipeline.indexing.service import IndexBuildConfig, IndexBuilderService
from ..pipeline.journey.credit import DEFAULT_HALF_LIFE_HOURS, TouchpointCredit, allocate_credit
from ..pipeline.journey.service import assemble
from ..pipeline.matching.service import IdentityResolver, Resolution
from ..pipeline.matching.tiers import DETERMINISTIC_TIERS, GeographicTier, MatchTier
from ..repository.conversion_repository import ConversionRepository

logger = get_logger(__name__)

NEW_ATTRIBUTION = "NEW_ATTRIBUTION"
BETTER_ATTRIBUTION = "BETTER_ATTRIBUTION"
SAME_TIER = "SAME_TIER"
NO_IMPROVEMENT = "NO_IMPROVEMENT"
NO_MATCH = "NO_MATCH"

# Fields of the response that are not part of the stored sub-record
_NOT_STORED = {"conversion_key", "previous_attribution", "persisted", "budget_exhausted"}


class ConversionNotFound(LookupError):
    """No conversion record under the given key."""


def visit_response(visit: VisitRecord) -> VisitResponse:
    return VisitResponse.model_validate(visit_to_dict(visit))


def journey_summary(journey: Journey) -> JourneySummaryResponse:
    return JourneySummaryResponse(
        touchpoint_count=journey.touchpoint_count,
        unique_sessions=journey.unique_sessions,
        unique_sources=journey.unique_sources,
        unique_campaigns=journey.unique_campaigns,
        unique_landing_pages=journey.unique_landing_pages,
        duration_hours=journey.duration_hours,
        hours_to_conversion=journey.hours_to_conversion,
        confidence=journey.confidence,
    )


def credit_response(credit: TouchpointCredit) -> CreditResponse:
    return CreditResponse(
        touchpoint_number=credit.touchpoint_number,
        visit_id=credit.visit_id,
        source=credit.source,
        medium=credit.medium,
        campaign=credit.campaign,
        credit=credit.credit,
        credit_percentage=credit.credit_percentage,
        decay_weight=credit.decay_weight,
        position_role=credit.position_role,
    )


class AttributionService:
    def __init__(
        self,
        ctx: RunContext,
        *,
        index_config: IndexBuildConfig | None = None,
        geo_client: GeoClient | None = None,
        geo_acceptance_score: int = MEDIUM_BAND,
        geo_windows: Sequence[GeoWindow] = (WINDOW_24H,),
        geo_success_ttl_s: int = SUCCESS_TTL_S,
        geo_failure_ttl_s: int = FAILURE_TTL_S,
        tiers: Sequence[MatchTier] = DETERMINISTIC_TIERS,
        time_decay_half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
    ):
        self.ctx = ctx
        self.time_decay_half_life_hours = time_decay_half_life_hours
        self.index_config = index_config or IndexBuildConfig()
        self.indexes = IndexRepository(
            ctx.store, self.index_config.key_prefix, self.index_config.ttl_s
        )
        self.conversions = ConversionRepository(ctx.store)
        self.geo_cache = GeoLookupCache(ctx, geo_client, geo_success_ttl_s, geo_failure_ttl_s)

        geo_tier = None
        if geo_windows:
            correlator = GeographicCorrelator(
                self.geo_cache, acceptance_score=geo_acceptance_score, budget=ctx.budget
            )
            geo_tier = GeographicTier(correlator, geo_windows)
        self.resolver = IdentityResolver(self.indexes, tiers, geo_tier)

        self.tier_priorities = {tier.name: tier.priority for tier in tiers}
        self.tier_priorities[GeographicTier.name] = GeographicTier.priority

    # =================================================================
    # INDEXES
    # =================================================================

    async def build_indexes(
        self, progress: IndexBuildProgress | None = None, restart: bool = False
    ) -> IndexBuildResponse:
        builder = IndexBuilderService(self.ctx, self.index_config, self.indexes)
        new_progress, stats = await builder.build(progress, restart=restart)
        return IndexBuildResponse(
            build_id=new_progress.build_id,
            complete=new_progress.is_complete,
            phase=new_progress.phase,
            stats=stats.as_dict(),
            progress=asdict(new_progress),
        )

    async def query_index(
        self, signal_type: str, signal_value: str, limit: int = 50
    ) -> list[VisitResponse]:
        """Raises pydantic's ValidationError (a ValueError) for an unknown signal type."""
        request = QueryIndexRequest(
            signal_type=signal_type, signal_value=signal_value, limit=limit
        )
        visits = await self.indexes.query_index(
            request.signal_type, request.signal_value, request.limit
        )
        return [visit_response(visit) for visit in visits]

    # =================================================================
    # ATTRIBUTION
    # =================================================================

    async def resolve_attribution(
        self, conversion_ref: str, options: ResolveOptions | None = None
    ) -> AttributionResponse:
        conversion = await self.conversions.load(conversion_ref)
        if conversion is None:
            raise ConversionNotFound(conversion_ref)
        return await self.attribute(conversion, options)

    async def attribute(
        self,
        conversion: ConversionRecord,
        options: ResolveOptions | None = None,
        persist: bool = True,
    ) -> AttributionResponse:
        """Resolve, assemble and credit the journey, compare with the stored result, write back."""
        options = options or ResolveOptions()
        resolution = await self.resolver.resolve(
            conversion, model=options.model, lookback_days=options.lookback_days
        )
        response = self._build_response(conversion, resolution, self.ctx.now())
        if resolution.budget_exhausted:
            # Unfinished: no classification and no write-back
            response.budget_exhausted = True
            return response

        previous = conversion.attribution
        response.improvement_type = self.classify_improvement(previous, response)
        if previous:
            response.previous_attribution = previous

        if persist and response.improvement_type in (
            NEW_ATTRIBUTION,
            BETTER_ATTRIBUTION,
            SAME_TIER,
        ):
            stored = response.model_dump(mode="json", exclude=_NOT_STORED)
            response.persisted = await self.conversions.save_attribution(
                conversion, stored, response.previous_attribution
            )

        logger.info(
            "Conversion attributed",
            key=conversion.key,
            method=response.method,
            model=response.model,
            improvement_type=response.improvement_type,
            confidence=response.confidence,
            persisted=response.persisted,
            run_id=self.ctx.run_id,
        )
        return response

    def classify_improvement(
        self, previous: dict[str, Any] | None, response: AttributionResponse
    ) -> str:
        """Only a strictly higher-priority tier counts as an improvement."""
        if not response.matched:
            return NO_MATCH
        previous_priority = self._previous_priority(previous)
        if previous_priority is None:
            return NEW_ATTRIBUTION
        if response.priority < previous_priority:
            return BETTER_ATTRIBUTION
        if response.priority == previous_priority:
            return SAME_TIER
        return NO_IMPROVEMENT

    def _previous_priority(self, previous: dict[str, Any] | None) -> int | None:
        if not previous:
            return None
        method = previous.get("method") or previous.get("attribution_method")
        if method in self.tier_priorities:
            return self.tier_priorities[method]
        priority = previous.get("priority")
        return int(priority) if isinstance(priority, int) else None

    def _build_response(
        self, conversion: ConversionRecord, resolution: Resolution, resolved_at: datetime
    ) -> AttributionResponse:
        if not resolution.matched:
            return AttributionResponse(
                conversion_key=conversion.key,
                matched=False,
                model=resolution.model,
                resolved_at=resolved_at,
            )

        winner = resolution.winner
        journey = assemble(resolution.matches, conversion.timestamp)
        touchpoints = [
            TouchpointResponse(
                **visit_response(tp.visit).model_dump(),
                touchpoint_number=tp.touchpoint_number,
                matched_by=tp.matched_by,
            )
            for tp in journey.touchpoints
        ]
        allocation = allocate_credit(
            journey.touchpoints,
            conversion.order_total,
            conversion.timestamp,
            self.time_decay_half_life_hours,
        )
        return AttributionResponse(
            conversion_key=conversion.key,
            matched=True,
            method=winner.tier,
            priority=winner.priority,
            points=winner.points,
            model=resolution.model,
            confidence=journey.confidence,
            geo_score=winner.geo_score,
            geo_band=winner.geo_band,
            matched_visit=visit_response(resolution.selected_visit),
            touchpoints=touchpoints,
            journey=journey_summary(journey),
            matched_tiers=[match.tier for match in resolution.matches],
            conversion_value=conversion.order_total,
            credit_allocation={
                model: [credit_response(credit) for credit in credits]
                for model, credits in allocation.items()
            },
            resolved_at=resolved_at,
        )
