"""
Attribution feature package.

This vertical slice keeps every layer of conversion attribution co-located
(domain models, index pipeline, matching, geo correlation, journeys,
repositories, services and jobs) so contributors can navigate the feature
without hunting through global folders.
"""

# Only the leaf layers are re-exported here; services and jobs import the
# geo cache, which itself depends on this package's domain and context.
from .context import RunBudget, RunContext  # noqa: F401
from .domain.models import (  # noqa: F401
    ConversionRecord,
    IndexEntry,
    VisitRecord,
)
