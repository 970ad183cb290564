"""
Indexing package: builds and reads the per-signal secondary indexes.
"""

from .paged_scan import ScanOutcome, paged_scan
from .repository import IndexRepository
from .service import IndexBuildConfig, IndexBuilderService, IndexBuildStats

__all__ = [
    "IndexBuildConfig",
    "IndexBuildStats",
    "IndexBuilderService",
    "IndexRepository",
    "ScanOutcome",
    "paged_scan",
]
