"""
Base remote interface for Gleaner.

This module defines the abstract interface every annotation service client
must implement for the sync engine.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

from ..models import Annotation


class BaseRemote(ABC):
    """
    Abstract base class for annotation service clients.

    Implementations raise RemoteError for any transport, authorization or
    service failure.
    """

    page_size: int = 200

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit; clients holding connections close them here."""
        pass

    @abstractmethod
    def list_annotations(
        self,
        group: str,
        updated_after: Optional[datetime],
        page_token: Optional[str] = None
    ) -> Tuple[List[Annotation], Optional[str]]:
        """
        Fetch one page of annotations updated after a point in time.

        Args:
            group: Group to list
            updated_after: Only annotations updated strictly later; None for all
            page_token: Token returned by the previous page, None for the first

        Returns:
            (annotations ordered by updated time, next page token or None)
        """
        pass

    @abstractmethod
    def update_tags(self, annotation_id: str, tags: List[str]) -> None:
        """Replace the tags of a remote annotation."""
        pass

    @abstractmethod
    def delete(self, annotation_id: str) -> None:
        """Delete a remote annotation."""
        pass

    @abstractmethod
    def update_group(self, annotation_id: str, new_group: str) -> None:
        """Move a remote annotation to another group."""
        pass
