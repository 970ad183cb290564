"""
Geographic correlation package.
"""

from .correlator import STAGED_WINDOWS, WINDOW_24H, WINDOW_90M, GeographicCorrelator, GeoWindow

__all__ = ["GeographicCorrelator", "GeoWindow", "STAGED_WINDOWS", "WINDOW_24H", "WINDOW_90M"]
