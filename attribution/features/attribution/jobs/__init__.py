"""
Job runners for the attribution feature.
"""

from .index_build_job import run_attribution_index_build
from .recovery_job import (
    run_recovery_24h,
    run_recovery_90m,
    run_recovery_pass,
    run_recovery_staged,
    run_reprocess_72h,
)

__all__ = [
    "run_attribution_index_build",
    "run_recovery_24h",
    "run_recovery_90m",
    "run_recovery_pass",
    "run_recovery_staged",
    "run_reprocess_72h",
]
