"""
Shared job plumbing: settings -> constructor arguments, client lifecycle.

This is the only place in the feature that reads `settings`; everything
below the jobs receives explicit arguments and a RunContext.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from attribution.config import Settings, settings
from attribution.infrastructure.observability.logging import (
    bind_run_context,
    clear_run_context,
    get_logger,
    setup_logging,
)
from attribution.services.geo.ipinfo_client import IpInfoClient
from attribution.services.infrastructure.redis_client import fast_redis

from ..context import RunContext
from ..pipeline.indexing.service import IndexBuildConfig

logger = get_logger(__name__)


def index_config_from_settings(config: Settings = settings) -> IndexBuildConfig:
    return IndexBuildConfig(**config.get_index_build_config())


def geo_client_from_settings(config: Settings = settings) -> IpInfoClient:
    return IpInfoClient(
        token=config.IPINFO_TOKEN,
        base_url=config.GEO_API_BASE_URL,
        timeout_s=config.GEO_REQUEST_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def job_runtime(
    job: str, budget_seconds: float, config: Settings = settings
) -> AsyncIterator[tuple[RunContext, IpInfoClient]]:
    """
    Configure logging, open the store (fatal on failure) and yield a fresh
    RunContext plus geo client. Clients are closed when the job returns.
    """
    setup_logging(config.LOG_LEVEL)
    await fast_redis.initialize()

    ctx = RunContext.create(
        fast_redis,
        budget_seconds,
        concurrency_limit=config.CONCURRENCY_LIMIT,
        geo_call_budget=config.GEO_CALL_BUDGET,
    )
    bind_run_context(job=job, run_id=ctx.run_id)
    geo_client = geo_client_from_settings(config)
    if not geo_client.configured:
        logger.warning("IPINFO_TOKEN not set - geographic correlation degraded", job=job)

    ctx.logger.info("Job started", job=job, budget_s=budget_seconds)
    try:
        yield ctx, geo_client
    finally:
        await geo_client.close()
        await fast_redis.close()
        clear_run_context()
