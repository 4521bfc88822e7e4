"""
Gleaner: a local mirror of Hypothesis annotations.

Syncs annotations into a local database with a bidirectional tag index,
filters them, and renders them into a folder/page knowledge base.
"""

__version__ = "0.1.0"
__author__ = "Gleaner Project"

from .config import ConfigManager, GleanerContext
from .database import DatabaseManager, TagIndex
from .errors import GleanerError
from .filters import matches, select
from .knowledge_base import HierarchyEngine, KnowledgeBaseWriter
from .models import Annotation, FilterSpec, HierarchySpec, SortSpec, OrderBy
from .remote import BaseRemote, HypothesisClient, MockRemote
from .sync import SyncEngine
from .versioning import VersionManager

__all__ = [
    "ConfigManager",
    "GleanerContext",
    "DatabaseManager",
    "TagIndex",
    "GleanerError",
    "matches",
    "select",
    "HierarchyEngine",
    "KnowledgeBaseWriter",
    "Annotation",
    "FilterSpec",
    "HierarchySpec",
    "SortSpec",
    "OrderBy",
    "BaseRemote",
    "HypothesisClient",
    "MockRemote",
    "SyncEngine",
    "VersionManager"
]
