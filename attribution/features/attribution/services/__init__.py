"""
Service layer for the attribution feature.
"""

from .attribution_service import AttributionService, ConversionNotFound
from .recovery_service import RECOVERY_PRESETS, RecoveryPassConfig, RecoveryService

__all__ = [
    "AttributionService",
    "ConversionNotFound",
    "RECOVERY_PRESETS",
    "RecoveryPassConfig",
    "RecoveryService",
]
