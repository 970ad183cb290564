"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs one bounded invocation of that job.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from attribution.features.attribution.jobs.index_build_job import run_attribution_index_build
from attribution.features.attribution.jobs.recovery_job import (
    run_recovery_24h,
    run_recovery_90m,
    run_recovery_staged,
    run_reprocess_72h,
)
from attribution.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "attribution_index_build": run_attribution_index_build,
    "attribution_recovery_24h": run_recovery_24h,
    "attribution_recovery_90m": run_recovery_90m,
    "attribution_recovery_staged": run_recovery_staged,
    "attribution_reprocess_72h": run_reprocess_72h,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "attribution_index_build").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
