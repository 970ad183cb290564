"""
Pipeline components for the attribution feature.

Index building, tier matching, geographic correlation and journey assembly.
Subpackages expose the primary services that other layers use.
"""

__all__ = ["geo", "indexing", "journey", "matching"]
