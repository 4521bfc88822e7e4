"""
Versioning package for Gleaner.
"""

from .manager import VersionManager

__all__ = ["VersionManager"]
