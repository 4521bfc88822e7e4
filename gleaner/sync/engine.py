"""
Sync engine for Gleaner.

This module pulls annotations from the remote service into the local mirror
and drives the write-back path: tag edits, deletions and group moves are
applied remotely first and only then to the local index.
"""

import duckdb
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional

from ..config import GleanerContext
from ..database import DatabaseManager, TagIndex
from ..errors import GleanerError, RemoteError
from ..filters import select
from ..models import Annotation, FilterSpec
from ..remote import BaseRemote


class SyncState(str, Enum):
    """Per-group sync state."""

    IDLE = "idle"
    PULLING = "pulling"
    RECONCILING = "reconciling"


@dataclass
class SyncReport:
    """Outcome of syncing one group."""

    group: str
    added: int = 0
    updated: int = 0
    removed: int = 0
    previous_watermark: Optional[datetime] = None
    watermark: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.added + self.updated + self.removed


class WriteBackStatus(str, Enum):
    """Where a two-phase write-back stopped."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    REMOTE_FAILED = "remote_failed"
    LOCAL_PENDING = "local_pending"


@dataclass
class WriteBackResult:
    """
    Result of one write-back.

    REMOTE_FAILED means neither side changed. LOCAL_PENDING means the remote
    change went through but the local index was not updated; the next sync
    brings it back in line.
    """

    annotation_id: str
    operation: str
    status: WriteBackStatus
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status in (WriteBackStatus.APPLIED, WriteBackStatus.SKIPPED)

    def describe(self) -> str:
        if self.error is not None:
            return f"{self.operation} {self.annotation_id}: {self.status.value}: {self.error}"
        return f"{self.operation} {self.annotation_id}: {self.status.value}"


@dataclass
class MoveReport:
    """Outcome of moving annotations between groups."""

    results: List[WriteBackResult] = field(default_factory=list)
    sync: Optional[SyncReport] = None

    @property
    def moved(self) -> int:
        return sum(1 for result in self.results if result.status == WriteBackStatus.APPLIED)


class SyncEngine:
    """
    Keeps the local mirror in step with the annotation service.
    """

    def __init__(self, context: GleanerContext, db: DatabaseManager,
                 index: TagIndex, remote: BaseRemote):
        """
        Initialize the sync engine.

        Args:
            context: Configuration and default group for this command
            db: Connected database manager
            index: Tag index over the same database
            remote: Annotation service client
        """
        self.context = context
        self.db = db
        self.index = index
        self.remote = remote
        self._states: Dict[str, SyncState] = {}

    def state(self, group: Optional[str] = None) -> SyncState:
        return self._states.get(group or self.context.group, SyncState.IDLE)

    def _set_state(self, group: str, state: SyncState):
        self._states[group] = state
        logging.debug(f"Group {group}: {state.value}")

    # Pulling and reconciling

    def _pull(self, group: str, updated_after: Optional[datetime]) -> List[Annotation]:
        """Fetch every page newer than updated_after. Any page failure propagates."""
        annotations: List[Annotation] = []
        token = None
        while True:
            page, token = self.remote.list_annotations(group, updated_after, token)
            annotations.extend(page)
            if token is None or len(page) < self.remote.page_size:
                break
        logging.info(f"Pulled {len(annotations)} annotations from group {group}")
        return annotations

    def _store(self, annotation: Annotation) -> bool:
        """Store an annotation and index its tags in one transaction."""
        with self.db.transaction():
            is_new = self.db.upsert_annotation(annotation)
            self.index.put(annotation.id, annotation.tags)
        return is_new

    def _forget(self, annotation_id: str) -> bool:
        """Drop an annotation from the mirror and the index in one transaction."""
        with self.db.transaction():
            stored = self.db.delete_annotation(annotation_id)
            indexed = self.index.remove(annotation_id)
        return stored or indexed

    def _reconcile(self, report: SyncReport, annotations: List[Annotation]):
        ignore_tag = self.context.config.ignore_tag
        for annotation in annotations:
            if ignore_tag and ignore_tag in annotation.tags:
                if self._forget(annotation.id):
                    report.removed += 1
            elif self._store(annotation):
                report.added += 1
            else:
                report.updated += 1

    def sync(self, group: Optional[str] = None, full: bool = False) -> SyncReport:
        """
        Pull annotations updated since the group's watermark.

        The watermark advances to the newest updated time seen, only after
        every page was fetched and ingested.

        Args:
            group: Group to sync (defaults to the context's group)
            full: Ignore the watermark and pull everything

        Returns:
            Counts of added, updated and removed annotations

        Raises:
            RemoteError: If any page fails; nothing is ingested and the
                watermark stays where it was
        """
        group = group or self.context.group
        previous = self.db.get_watermark(group)
        report = SyncReport(group=group, previous_watermark=previous, watermark=previous)

        try:
            self._set_state(group, SyncState.PULLING)
            annotations = self._pull(group, None if full else previous)

            self._set_state(group, SyncState.RECONCILING)
            self._reconcile(report, annotations)
        except RemoteError as e:
            logging.error(f"Sync of group {group} aborted: {e}")
            raise
        finally:
            self._set_state(group, SyncState.IDLE)

        if annotations:
            newest = max(annotation.updated for annotation in annotations)
            report.watermark = self.db.advance_watermark(group, newest)

        logging.info(
            f"Synced group {group}: added {report.added}, updated {report.updated}, "
            f"removed {report.removed}"
        )
        return report

    def reset(self, group: Optional[str] = None) -> SyncReport:
        """
        Rebuild a group's mirror from scratch.

        Forgets every local annotation of the group and its watermark, then
        pulls everything again.
        """
        group = group or self.context.group
        with self.db.transaction():
            for annotation in self.db.list_annotations(group):
                self._forget(annotation.id)
            self.db.reset_watermarks(group)
        logging.info(f"Reset local mirror of group {group}")
        return self.sync(group)

    # Write-back

    def _write_back(self, annotation_id: str, operation: str,
                    remote_call: Callable[[], None],
                    local_apply: Callable[[], None]) -> WriteBackResult:
        """
        Apply a change remotely, then locally.

        A remote failure leaves local state untouched. The change is never
        retried here, since the remote API may already have applied it.
        """
        try:
            remote_call()
        except RemoteError as e:
            logging.error(f"{operation} failed remotely for {annotation_id}: {e}")
            return WriteBackResult(annotation_id, operation, WriteBackStatus.REMOTE_FAILED, e)

        try:
            local_apply()
        except (GleanerError, duckdb.Error) as e:
            logging.warning(
                f"{operation} applied remotely for {annotation_id} but not locally: {e}. "
                f"The next sync will repair it."
            )
            return WriteBackResult(annotation_id, operation, WriteBackStatus.LOCAL_PENDING, e)

        return WriteBackResult(annotation_id, operation, WriteBackStatus.APPLIED)

    def _run_batch(self, annotations: List[Annotation],
                   step: Callable[[Annotation], WriteBackResult]) -> List[WriteBackResult]:
        """Run write-backs in order, stopping at the first remote failure."""
        results = []
        for annotation in annotations:
            result = step(annotation)
            results.append(result)
            if result.status == WriteBackStatus.REMOTE_FAILED:
                logging.error(
                    f"Stopped after remote failure; {len(annotations) - len(results)} "
                    f"annotations left unchanged"
                )
                break
        return results

    def _retag(self, annotation: Annotation, tags: List[str], operation: str) -> WriteBackResult:
        remote_tags = [tag for tag in tags if tag]
        updated = annotation.model_copy(update={"tags": remote_tags})
        return self._write_back(
            annotation.id,
            operation,
            partial(self.remote.update_tags, annotation.id, remote_tags),
            partial(self._store, updated)
        )

    def _add_tag(self, tag: str, annotation: Annotation) -> WriteBackResult:
        if tag in annotation.tags:
            return WriteBackResult(annotation.id, "add_tag", WriteBackStatus.SKIPPED)
        return self._retag(annotation, annotation.tags + [tag], "add_tag")

    def _remove_tag(self, tag: str, annotation: Annotation) -> WriteBackResult:
        if tag not in annotation.tags:
            return WriteBackResult(annotation.id, "remove_tag", WriteBackStatus.SKIPPED)
        return self._retag(annotation, [t for t in annotation.tags if t != tag], "remove_tag")

    def add_tag(self, annotations: List[Annotation], tag: str) -> List[WriteBackResult]:
        """Add a tag to each annotation that doesn't already carry it."""
        if not tag:
            raise ValueError("Cannot add an empty tag")
        return self._run_batch(annotations, partial(self._add_tag, tag))

    def remove_tag(self, annotations: List[Annotation], tag: str) -> List[WriteBackResult]:
        """Remove a tag from each annotation carrying it."""
        return self._run_batch(annotations, partial(self._remove_tag, tag))

    def _delete(self, remote: bool, annotation: Annotation) -> WriteBackResult:
        if remote:
            remote_call = partial(self.remote.delete, annotation.id)
        else:
            ignore_tag = self.context.config.ignore_tag
            tags = [tag for tag in annotation.tags if tag != ignore_tag] + [ignore_tag]
            remote_call = partial(self.remote.update_tags, annotation.id, tags)
        return self._write_back(
            annotation.id,
            "delete" if remote else "ignore",
            remote_call,
            partial(self._forget, annotation.id)
        )

    def delete(self, annotations: List[Annotation], remote: bool = False) -> List[WriteBackResult]:
        """
        Remove annotations from the mirror.

        Args:
            annotations: Annotations to remove
            remote: Delete them on the service too. Otherwise they get the
                ignore tag remotely, so later syncs skip them.
        """
        return self._run_batch(annotations, partial(self._delete, remote))

    def _move(self, target_group: str, annotation: Annotation) -> WriteBackResult:
        def local_apply():
            if self.index.contains(annotation.id):
                self._store(annotation.model_copy(update={"group": target_group}))

        return self._write_back(
            annotation.id,
            "move",
            partial(self.remote.update_group, annotation.id, target_group),
            local_apply
        )

    def move(self, source_group: str, target_group: str,
             spec: Optional[FilterSpec] = None) -> MoveReport:
        """
        Move matching annotations from one group to another.

        Every annotation in source_group matching spec is moved remotely, then
        target_group is fully re-synced.
        """
        candidates = self._pull(source_group, None)
        chosen = select(candidates, spec or FilterSpec())
        logging.info(f"Moving {len(chosen)} annotations from {source_group} to {target_group}")

        report = MoveReport(results=self._run_batch(chosen, partial(self._move, target_group)))
        report.sync = self.sync(target_group, full=True)
        return report
