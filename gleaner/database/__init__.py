"""Local persistence: annotation mirror, tag index and sync watermarks."""

from .manager import DatabaseManager
from .tag_index import TagIndex, EMPTY_TAG

__all__ = ["DatabaseManager", "TagIndex", "EMPTY_TAG"]
