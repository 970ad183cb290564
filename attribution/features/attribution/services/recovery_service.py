"""
Attribution recovery passes.

One configurable pass replaces the separate deep-dive / overnight /
staged / 72h reprocessing scripts: the presets differ only in geo windows,
the processed-marker namespace and which conversions they pick up.

Re-invocation safety comes from the processed markers
`{namespace}:{email}:{timestamp}`: a conversion with a marker is never
processed again by the same pass, so a second concurrent run can only
duplicate work, not corrupt it. A conversion whose resolution was cut short
by the run budget gets no marker; its page stays under the saved cursor and
is scanned again on the next invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from attribution.infrastructure.observability.logging import get_logger
from attribution.models.api.attribution_request import ResolveOptions
from attribution.models.api.attribution_response import RecoveryPassResponse
from attribution.services.geo.geo_cache import FAILURE_TTL_S, SUCCESS_TTL_S, GeoClient
from attribution.services.record_store import MalformedRecord
from attribution.utils.batching import run_in_batches

from ..context import RunContext
from ..domain.models import FIRST_TOUCH, ConversionRecord
from ..domain.parsing import format_timestamp
from ..pipeline.geo.correlator import (
    MEDIUM_BAND,
    STAGED_WINDOWS,
    WINDOW_24H,
    WINDOW_90M,
    GeoWindow,
)
from ..pipeline.indexing.paged_scan import paged_scan
from ..pipeline.indexing.service import IndexBuildConfig
from ..pipeline.journey.credit import DEFAULT_HALF_LIFE_HOURS
from ..pipeline.matching.tiers import DETERMINISTIC_TIERS
from ..repository.conversion_repository import ConversionRepository, RecoveryProgressRepository
from .attribution_service import BETTER_ATTRIBUTION, NEW_ATTRIBUTION, NO_MATCH, AttributionService

logger = get_logger(__name__)

PROGRESS_TTL_S = 7200
_COUNTERS = (
    "scanned",
    "processed",
    "improved",
    "unmatched",
    "skipped_marked",
    "skipped_attributed",
    "skipped_out_of_window",
    "malformed",
)


@dataclass(frozen=True, slots=True)
class RecoveryPassConfig:
    name: str
    marker_namespace: str
    marker_ttl_seconds: int
    windows: tuple[GeoWindow, ...]
    deterministic_tiers: bool = True
    only_unattributed: bool = True
    conversion_max_age_hours: int = 24
    model: str = FIRST_TOUCH
    lookback_days: int = 14


RECOVERY_PRESETS: dict[str, RecoveryPassConfig] = {
    "deep_dive_24h": RecoveryPassConfig(
        name="deep_dive_24h",
        marker_namespace="alreadydeep",
        marker_ttl_seconds=30 * 86400,
        windows=(WINDOW_24H,),
    ),
    "overnight_90m": RecoveryPassConfig(
        name="overnight_90m",
        marker_namespace="reprocessed_strict",
        marker_ttl_seconds=30 * 86400,
        windows=(WINDOW_90M,),
    ),
    "staged_3phase": RecoveryPassConfig(
        name="staged_3phase",
        marker_namespace="staged_recovery",
        marker_ttl_seconds=7 * 86400,
        windows=STAGED_WINDOWS,
    ),
    "reprocess_72h": RecoveryPassConfig(
        name="reprocess_72h",
        marker_namespace="reprocessed",
        marker_ttl_seconds=7 * 86400,
        windows=(WINDOW_24H,),
        only_unattributed=False,
        conversion_max_age_hours=72,
    ),
}


@dataclass
class _PassCounters:
    values: dict[str, int] = field(default_factory=lambda: dict.fromkeys(_COUNTERS, 0))

    def add(self, name: str, amount: int = 1) -> None:
        self.values[name] += amount


class RecoveryService:
    def __init__(
        self,
        ctx: RunContext,
        config: RecoveryPassConfig,
        *,
        index_config: IndexBuildConfig | None = None,
        geo_client: GeoClient | None = None,
        geo_acceptance_score: int = MEDIUM_BAND,
        geo_success_ttl_s: int = SUCCESS_TTL_S,
        geo_failure_ttl_s: int = FAILURE_TTL_S,
        time_decay_half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
        conversion_pattern: str = "conversions:*",
        page_size: int = 200,
        batch_size: int = 10,
        progress_ttl_s: int = PROGRESS_TTL_S,
    ):
        self.ctx = ctx
        self.config = config
        self.conversion_pattern = conversion_pattern
        self.page_size = page_size
        self.batch_size = batch_size
        self.progress_ttl_s = progress_ttl_s
        self.conversions = ConversionRepository(ctx.store)
        self.progress = RecoveryProgressRepository(ctx.store)
        self.attribution = AttributionService(
            ctx,
            index_config=index_config,
            geo_client=geo_client,
            geo_acceptance_score=geo_acceptance_score,
            geo_windows=config.windows,
            geo_success_ttl_s=geo_success_ttl_s,
            geo_failure_ttl_s=geo_failure_ttl_s,
            time_decay_half_life_hours=time_decay_half_life_hours,
            tiers=DETERMINISTIC_TIERS if config.deterministic_tiers else (),
        )
        self.options = ResolveOptions(model=config.model, lookback_days=config.lookback_days)

    async def run(self) -> RecoveryPassResponse:
        """One bounded invocation; re-invoke until the response reports `complete`."""
        saved = await self.progress.load(self.config.name) or {}
        if saved.get("complete"):
            saved = {}
        totals = {name: int(saved.get(name, 0)) for name in _COUNTERS}
        counters = _PassCounters()

        outcome = await paged_scan(
            self.ctx.store,
            self.conversion_pattern,
            page_size=self.page_size,
            on_page=lambda keys: self._process_page(keys, counters),
            budget=self.ctx.budget,
            start_cursor=str(saved.get("cursor", "0")),
        )

        for name, value in counters.values.items():
            totals[name] += value
        await self.progress.save(
            self.config.name,
            {
                **totals,
                "cursor": outcome.cursor,
                "complete": outcome.complete,
                "started_at": saved.get("started_at") or format_timestamp(self.ctx.now()),
                "updated_at": format_timestamp(self.ctx.now()),
            },
            self.progress_ttl_s,
        )

        response = RecoveryPassResponse(
            pass_name=self.config.name,
            complete=outcome.complete,
            cursor=outcome.cursor,
            budget_exhausted=outcome.budget_exhausted,
            error=outcome.error,
            geo_stats=self.ctx.geo_stats.as_dict(),
            **counters.values,
        )
        logger.info(
            "Recovery pass invocation finished",
            run_id=self.ctx.run_id,
            elapsed_s=round(self.ctx.budget.elapsed(), 2),
            **response.model_dump(exclude={"geo_stats"}),
        )
        return response

    async def _process_page(self, keys: list[str], counters: _PassCounters) -> bool:
        """
        Skip counts only land in `counters` once the whole page finished, so a
        page that is scanned again is not counted twice.
        """
        page = _PassCounters()
        page.add("scanned", len(keys))

        async def _load(key: str) -> ConversionRecord | None:
            try:
                return await self.conversions.load(key)
            except MalformedRecord as e:
                logger.debug("Skipping malformed conversion", key=key, reason=e.reason)
                page.add("malformed")
                return None

        loaded = await run_in_batches(keys, _load, self.ctx.concurrency_limit)
        candidates = [c for c in loaded if c is not None and self._in_age_window(c, page)]

        flags = await run_in_batches(candidates, self._needs_processing, self.ctx.concurrency_limit)
        eligible = []
        for conversion, reason in zip(candidates, flags):
            if reason is None:
                eligible.append(conversion)
            else:
                page.add(reason)

        finished = await run_in_batches(
            eligible, lambda conversion: self._process(conversion, counters), self.batch_size
        )
        if not all(finished):
            logger.info(
                "Recovery page unfinished - budget exhausted",
                pass_name=self.config.name,
                deferred=finished.count(False),
            )
            return False

        for name, value in page.values.items():
            counters.add(name, value)
        return True

    def _in_age_window(self, conversion: ConversionRecord, counters: _PassCounters) -> bool:
        age = self.ctx.now() - conversion.timestamp
        if timedelta(0) <= age <= timedelta(hours=self.config.conversion_max_age_hours):
            return True
        counters.add("skipped_out_of_window")
        return False

    async def _needs_processing(self, conversion: ConversionRecord) -> str | None:
        """None when the conversion should be processed, else the skip counter to bump."""
        if self.config.only_unattributed and _is_attributed(conversion.attribution):
            return "skipped_attributed"
        if await self.conversions.is_marked(self.config.marker_namespace, conversion):
            return "skipped_marked"
        return None

    async def _process(self, conversion: ConversionRecord, counters: _PassCounters) -> bool:
        response = await self.attribution.attribute(conversion, self.options)
        if response.budget_exhausted:
            return False
        counters.add("processed")
        if response.improvement_type in (NEW_ATTRIBUTION, BETTER_ATTRIBUTION) and response.persisted:
            counters.add("improved")
        elif response.improvement_type == NO_MATCH:
            counters.add("unmatched")
        await self.conversions.mark(
            self.config.marker_namespace,
            conversion,
            self.config.marker_ttl_seconds,
            response.improvement_type or NO_MATCH,
        )
        return True


def _is_attributed(attribution: dict[str, Any] | None) -> bool:
    if not attribution:
        return False
    return bool(attribution.get("method") or attribution.get("attribution_method"))


def resolve_preset(name: str) -> RecoveryPassConfig:
    if name not in RECOVERY_PRESETS:
        raise ValueError(
            f"Unknown recovery pass '{name}'. Available: {', '.join(sorted(RECOVERY_PRESETS))}"
        )
    return RECOVERY_PRESETS[name]
