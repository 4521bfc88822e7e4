"""
Mock remote for testing Gleaner.

This module provides an in-memory annotation service so the sync engine can
be exercised without network access.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from ..errors import RemoteError
from ..models import Annotation
from .base import BaseRemote


class MockRemote(BaseRemote):
    """
    In-memory annotation service.

    Every mutation bumps the annotation's updated time past the newest
    annotation stored, so incremental listing sees it. Operations named in
    fail_operations raise RemoteError; fail_on_page makes that listing page
    fail.
    """

    def __init__(self, annotations: Optional[List[Annotation]] = None, page_size: int = 200):
        """Initialize the mock service with optional starting annotations."""
        self.page_size = page_size
        self.annotations: Dict[str, Annotation] = {}
        self.fail_operations: Set[str] = set()
        self.fail_on_page: Optional[int] = None
        self.calls: List[Tuple[str, str]] = []
        for annotation in annotations or []:
            self.add(annotation)

    def add(self, annotation: Annotation) -> Annotation:
        self.annotations[annotation.id] = annotation
        return annotation

    def _check(self, operation: str, annotation_id: str):
        self.calls.append((operation, annotation_id))
        if operation in self.fail_operations:
            raise RemoteError(f"Mock {operation} failed", annotation_id=annotation_id, status_code=500)
        if annotation_id not in self.annotations:
            raise RemoteError(f"No such annotation {annotation_id}", annotation_id=annotation_id,
                              status_code=404)

    def _next_updated(self) -> datetime:
        latest = max(a.updated for a in self.annotations.values())
        return latest + timedelta(seconds=1)

    def _touch(self, annotation_id: str, **changes) -> None:
        changes["updated"] = self._next_updated()
        self.annotations[annotation_id] = self.annotations[annotation_id].model_copy(update=changes)

    def list_annotations(
        self,
        group: str,
        updated_after: Optional[datetime],
        page_token: Optional[str] = None
    ) -> Tuple[List[Annotation], Optional[str]]:
        offset = int(page_token) if page_token else 0
        page_number = offset // self.page_size
        self.calls.append(("list", f"{group}:{page_number}"))
        if self.fail_on_page is not None and page_number == self.fail_on_page:
            raise RemoteError(f"Mock list failed on page {page_number}", status_code=503)

        matching = sorted(
            (a for a in self.annotations.values()
             if a.group == group and (updated_after is None or a.updated > updated_after)),
            key=lambda a: (a.updated, a.id)
        )
        page = matching[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        next_token = str(next_offset) if len(page) == self.page_size else None
        return page, next_token

    def update_tags(self, annotation_id: str, tags: List[str]) -> None:
        self._check("update_tags", annotation_id)
        self._touch(annotation_id, tags=list(tags))

    def delete(self, annotation_id: str) -> None:
        self._check("delete", annotation_id)
        del self.annotations[annotation_id]

    def update_group(self, annotation_id: str, new_group: str) -> None:
        self._check("update_group", annotation_id)
        self._touch(annotation_id, group=new_group)
