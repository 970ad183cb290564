"""
Domain layer for the attribution feature.
"""

from .models import (
    ConversionRecord,
    GeoInfo,
    IndexBuildProgress,
    IndexEntry,
    Journey,
    TierMatch,
    Touchpoint,
    VisitRecord,
)
from .parsing import parse_conversion, parse_visit, parse_visit_container

__all__ = [
    "ConversionRecord",
    "GeoInfo",
    "IndexBuildProgress",
    "IndexEntry",
    "Journey",
    "TierMatch",
    "Touchpoint",
    "VisitRecord",
    "parse_conversion",
    "parse_visit",
    "parse_visit_container",
]
