"""
Tag index for Gleaner.

Maps annotation IDs to their tags and tags to their annotation IDs. Both maps
live in DuckDB tables owned by this class; nothing else writes to them.
"""

import logging
from typing import Dict, Iterable, Set, Tuple

from ..errors import InconsistentIndex, NotFound
from .manager import DatabaseManager


# Reserved key for annotations without tags. Never sent to the remote service.
EMPTY_TAG = ""


def normalize_tags(tags: Iterable[str]) -> Set[str]:
    """Tag set as stored: blank tags dropped, untagged mapped to EMPTY_TAG."""
    cleaned = {tag for tag in tags if tag and tag.strip()}
    return cleaned or {EMPTY_TAG}


class TagIndex:
    """
    Bidirectional annotation/tag index.

    Invariant: annotation_id is in the bucket of tag exactly when tag is in the
    tag set of annotation_id. Each mutation changes both tables in a single
    transaction, so the invariant holds after a crash and concurrent readers
    never see a half-applied mutation.
    """

    def __init__(self, db: DatabaseManager):
        """
        Initialize the tag index.

        Args:
            db: Connected database manager holding the index tables
        """
        self.db = db

    def put(self, annotation_id: str, tags: Iterable[str]) -> Tuple[Set[str], Set[str]]:
        """
        Replace the tag set of an annotation.

        Only the difference against the previous set is written.

        Args:
            annotation_id: The annotation to (re)index
            tags: Its complete new tag set

        Returns:
            (added, removed) tag sets
        """
        new_tags = normalize_tags(tags)
        with self.db.transaction() as connection:
            old_tags = {
                row[0] for row in connection.execute(
                    "SELECT tag FROM annotation_tags WHERE annotation_id = ?",
                    [annotation_id]
                ).fetchall()
            }
            added = new_tags - old_tags
            removed = old_tags - new_tags
            for tag in removed:
                connection.execute(
                    "DELETE FROM annotation_tags WHERE annotation_id = ? AND tag = ?",
                    [annotation_id, tag]
                )
                connection.execute(
                    "DELETE FROM tag_annotations WHERE tag = ? AND annotation_id = ?",
                    [tag, annotation_id]
                )
            for tag in added:
                connection.execute(
                    "INSERT INTO annotation_tags (annotation_id, tag) VALUES (?, ?)",
                    [annotation_id, tag]
                )
                connection.execute(
                    "INSERT INTO tag_annotations (tag, annotation_id) VALUES (?, ?)",
                    [tag, annotation_id]
                )
        if added or removed:
            logging.debug(f"Indexed {annotation_id}: +{sorted(added)} -{sorted(removed)}")
        return added, removed

    def get_tags(self, annotation_id: str) -> Set[str]:
        """
        Get the tags of an annotation.

        Returns:
            The tag set; empty for an untagged annotation

        Raises:
            NotFound: If the annotation is not indexed
            InconsistentIndex: If the two maps disagree about this annotation
        """
        with self.db.lock:
            forward = {
                row[0] for row in self.db.execute(
                    "SELECT tag FROM annotation_tags WHERE annotation_id = ?",
                    [annotation_id]
                )
            }
            backward = {
                row[0] for row in self.db.execute(
                    "SELECT tag FROM tag_annotations WHERE annotation_id = ?",
                    [annotation_id]
                )
            }
        if forward != backward:
            raise InconsistentIndex(
                f"Tag index disagrees about annotation {annotation_id!r}; rebuild with a full sync",
                {"annotation_id": annotation_id,
                 "by_annotation": sorted(forward), "by_tag": sorted(backward)}
            )
        if not forward:
            raise NotFound(f"Couldn't find an annotation with ID {annotation_id!r}",
                           annotation_id=annotation_id)
        return forward - {EMPTY_TAG}

    def get_ids(self, tag: str) -> Set[str]:
        """
        Get the annotations carrying a tag.

        Returns:
            The annotation IDs; empty if the tag was never seen

        Raises:
            InconsistentIndex: If the two maps disagree about this tag
        """
        with self.db.lock:
            forward = {
                row[0] for row in self.db.execute(
                    "SELECT annotation_id FROM tag_annotations WHERE tag = ?",
                    [tag]
                )
            }
            backward = {
                row[0] for row in self.db.execute(
                    "SELECT annotation_id FROM annotation_tags WHERE tag = ?",
                    [tag]
                )
            }
        if forward != backward:
            raise InconsistentIndex(
                f"Tag index disagrees about tag {tag!r}; rebuild with a full sync",
                {"tag": tag, "by_tag": sorted(forward), "by_annotation": sorted(backward)}
            )
        return forward

    def untagged_ids(self) -> Set[str]:
        return self.get_ids(EMPTY_TAG)

    def contains(self, annotation_id: str) -> bool:
        rows = self.db.execute(
            "SELECT 1 FROM annotation_tags WHERE annotation_id = ? LIMIT 1",
            [annotation_id]
        )
        return bool(rows)

    def remove(self, annotation_id: str) -> bool:
        """
        Remove an annotation from both maps.

        Tag buckets left empty disappear with their last row.

        Returns:
            True if the annotation was indexed
        """
        with self.db.transaction() as connection:
            tags = [
                row[0] for row in connection.execute(
                    "SELECT tag FROM annotation_tags WHERE annotation_id = ?",
                    [annotation_id]
                ).fetchall()
            ]
            if not tags:
                return False
            connection.execute(
                "DELETE FROM annotation_tags WHERE annotation_id = ?",
                [annotation_id]
            )
            connection.execute(
                "DELETE FROM tag_annotations WHERE annotation_id = ?",
                [annotation_id]
            )
        logging.debug(f"Removed {annotation_id} from tag index ({len(tags)} tags)")
        return True

    def all_ids(self) -> Set[str]:
        return {row[0] for row in self.db.execute("SELECT DISTINCT annotation_id FROM annotation_tags")}

    def all_tags(self) -> Set[str]:
        """Every real tag in the index; the reserved empty key is left out."""
        rows = self.db.execute("SELECT DISTINCT tag FROM tag_annotations WHERE tag <> ?", [EMPTY_TAG])
        return {row[0] for row in rows}

    def tag_counts(self) -> Dict[str, int]:
        """Number of annotations per real tag."""
        rows = self.db.execute("""
            SELECT tag, COUNT(*) FROM tag_annotations
            WHERE tag <> ?
            GROUP BY tag
        """, [EMPTY_TAG])
        return {tag: count for tag, count in rows}

    def check_consistency(self):
        """
        Compare both maps in full.

        Raises:
            InconsistentIndex: Listing the pairs present on only one side
        """
        with self.db.lock:
            forward = set(self.db.execute("SELECT annotation_id, tag FROM annotation_tags"))
            backward = set(self.db.execute("SELECT annotation_id, tag FROM tag_annotations"))
        if forward != backward:
            raise InconsistentIndex(
                "Tag index is inconsistent; rebuild with a full sync",
                {"only_by_annotation": sorted(forward - backward),
                 "only_by_tag": sorted(backward - forward)}
            )
