"""
Recovery pass jobs.

Each registry entry runs one bounded invocation of a RECOVERY_PRESETS pass
for conversions that the regular resolution left unattributed (or, for
the 72h reprocess, attributed weakly).
"""

from dataclasses import replace

from attribution.config import settings
from attribution.infrastructure.observability.logging import log_job_result
from attribution.models.api.attribution_response import RecoveryPassResponse

from ..services.recovery_service import RecoveryService, resolve_preset
from .runtime import index_config_from_settings, job_runtime


async def run_recovery_pass(pass_name: str) -> RecoveryPassResponse:
    preset = replace(
        resolve_preset(pass_name),
        model=settings.ATTRIBUTION_MODEL,
        lookback_days=settings.ATTRIBUTION_LOOKBACK_DAYS,
    )
    job = f"attribution_recovery:{preset.name}"

    async with job_runtime(job, settings.RECOVERY_BUDGET_SECONDS) as (ctx, geo_client):
        service = RecoveryService(
            ctx,
            preset,
            index_config=index_config_from_settings(),
            geo_client=geo_client,
            geo_acceptance_score=settings.GEO_ACCEPTANCE_SCORE,
            geo_success_ttl_s=settings.GEO_CACHE_TTL_SECONDS,
            geo_failure_ttl_s=settings.GEO_FAILURE_TTL_SECONDS,
            time_decay_half_life_hours=settings.ATTRIBUTION_TIME_DECAY_HALF_LIFE_HOURS,
            conversion_pattern=settings.CONVERSION_PATTERN,
            page_size=settings.RECOVERY_SCAN_PAGE_SIZE,
            batch_size=settings.RECOVERY_BATCH_SIZE,
        )
        result = await service.run()

    log_job_result(job, result.model_dump())
    return result


async def run_recovery_24h() -> RecoveryPassResponse:
    return await run_recovery_pass("deep_dive_24h")


async def run_recovery_90m() -> RecoveryPassResponse:
    return await run_recovery_pass("overnight_90m")


async def run_recovery_staged() -> RecoveryPassResponse:
    return await run_recovery_pass("staged_3phase")


async def run_reprocess_72h() -> RecoveryPassResponse:
    return await run_recovery_pass("reprocess_72h")
