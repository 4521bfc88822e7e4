"""
Exceptions for Gleaner.

Every error raised by the index, sync, filter and hierarchy code derives from
GleanerError so the command line can report it uniformly.
"""

from typing import Any, Dict, List, Optional


class GleanerError(Exception):
    """
    Base exception for all Gleaner errors.

    Attributes:
        message: Human-readable error message
        details: Additional context about the error
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a dictionary for logging."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class NotFound(GleanerError):
    """Raised when an annotation id or tag is not in the local index."""

    def __init__(self, message: str, annotation_id: Optional[str] = None, tag: Optional[str] = None):
        details = {}
        if annotation_id is not None:
            details["annotation_id"] = annotation_id
        if tag is not None:
            details["tag"] = tag
        super().__init__(message, details)
        self.annotation_id = annotation_id
        self.tag = tag


class RemoteError(GleanerError):
    """Raised when the annotation service rejects or fails a request."""

    def __init__(self, message: str, annotation_id: Optional[str] = None,
                 status_code: Optional[int] = None):
        details: Dict[str, Any] = {}
        if annotation_id is not None:
            details["annotation_id"] = annotation_id
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.annotation_id = annotation_id
        self.status_code = status_code

    def __str__(self) -> str:
        if self.annotation_id:
            return f"{self.message} (annotation {self.annotation_id})"
        return self.message


class InconsistentIndex(GleanerError):
    """
    Raised when the two sides of the tag index disagree.

    The local database is corrupt and must be rebuilt with a full re-sync.
    """


class FilenameCollision(GleanerError):
    """Raised when distinct grouping keys sanitize to the same file name."""

    def __init__(self, path: str, keys: List[str]):
        super().__init__(
            f"Keys {keys!r} all map to {path!r}",
            {"path": path, "keys": list(keys)},
        )
        self.path = path
        self.keys = list(keys)


class InvalidSpec(GleanerError):
    """Raised when a filter, hierarchy or sort specification is malformed."""


class TemplateError(GleanerError):
    """Raised when a template references a key missing from its context."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, {"key": key} if key else None)
        self.key = key


class ConfigError(GleanerError):
    """Raised when required configuration is missing or invalid."""
