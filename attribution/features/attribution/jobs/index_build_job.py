"""
Index build job.

Runs one bounded invocation of the signal index build. The scheduler is
expected to re-run it until the logged result reports `complete`.
"""

import asyncio

from attribution.config import settings
from attribution.infrastructure.observability.logging import log_job_result
from attribution.models.api.attribution_response import IndexBuildResponse

from ..services.attribution_service import AttributionService
from .runtime import index_config_from_settings, job_runtime

JOB_NAME = "attribution_index_build"


async def run_attribution_index_build(restart: bool = False) -> IndexBuildResponse:
    async with job_runtime(JOB_NAME, settings.INDEX_BUILD_BUDGET_SECONDS) as (ctx, _geo_client):
        service = AttributionService(ctx, index_config=index_config_from_settings())
        result = await service.build_indexes(restart=restart)

    log_job_result(
        JOB_NAME,
        {
            "complete": result.complete,
            "build_id": result.build_id,
            "phase": result.phase,
            "error": result.stats.get("error"),
            **{k: v for k, v in result.stats.items() if k not in ("error", "phase", "complete")},
        },
    )
    return result


if __name__ == "__main__":
    asyncio.run(run_attribution_index_build())
