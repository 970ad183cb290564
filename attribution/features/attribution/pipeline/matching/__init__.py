"""
Matching package: ordered tier strategies and the identity resolver.
"""

from .service import IdentityResolver, Resolution, select_visit
from .tiers import DETERMINISTIC_TIERS, GeographicTier, SignalTier

__all__ = [
    "DETERMINISTIC_TIERS",
    "GeographicTier",
    "IdentityResolver",
    "Resolution",
    "SignalTier",
    "select_visit",
]
