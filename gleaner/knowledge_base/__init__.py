"""
Knowledge base package for Gleaner.

Groups annotations into folders and pages and renders them to files.
"""

from .hierarchy import (
    HierarchyEngine, KnowledgeBaseTree, Folder, Page, Link,
    UNTAGGED, sanitize_segment
)
from .templates import Templates, render, DEFAULT_TEMPLATES
from .writer import KnowledgeBaseWriter, WriteSummary

__all__ = [
    "HierarchyEngine",
    "KnowledgeBaseTree",
    "Folder",
    "Page",
    "Link",
    "UNTAGGED",
    "sanitize_segment",
    "Templates",
    "render",
    "DEFAULT_TEMPLATES",
    "KnowledgeBaseWriter",
    "WriteSummary"
]
