"""Data models for Gleaner."""

from .annotation import Annotation, UNTITLED
from .specs import FilterSpec, HierarchySpec, SortSpec, OrderBy, TagMode

__all__ = [
    "Annotation",
    "UNTITLED",
    "FilterSpec",
    "HierarchySpec",
    "SortSpec",
    "OrderBy",
    "TagMode"
]
