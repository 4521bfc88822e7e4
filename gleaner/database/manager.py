"""
Database manager for Gleaner.

This module handles the DuckDB database holding the local annotation mirror,
the tag index tables and the per-group sync watermarks.
"""

import duckdb
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from ..errors import NotFound
from ..models import Annotation
from ..models.annotation import as_utc


class DatabaseManager:
    """
    Manages the DuckDB database for the annotation mirror.

    All statements go through one connection guarded by a re-entrant lock.
    Mutations run inside transaction(), which nests: only the outermost block
    issues BEGIN and COMMIT.
    """

    def __init__(self, db_path: str = "gleaner.duckdb"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:"
        """
        self.db_path = db_path
        self.connection = None
        self.lock = threading.RLock()
        self._depth = 0

    def connect(self):
        """Establish connection to the database."""
        self.connection = duckdb.connect(self.db_path)

    def disconnect(self):
        """Close the database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        self.initialize_database()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()

    def _require_connection(self):
        if not self.connection:
            raise RuntimeError("Database connection not established")
        return self.connection

    def initialize_database(self):
        """
        Create all necessary tables if they don't exist.
        """
        connection = self._require_connection()

        with self.lock:
            connection.execute("""
                CREATE TABLE IF NOT EXISTS annotations (
                    annotation_id VARCHAR PRIMARY KEY,
                    group_id VARCHAR NOT NULL,
                    created VARCHAR NOT NULL,
                    updated VARCHAR NOT NULL,
                    payload VARCHAR NOT NULL
                )
            """)

            # Both directions of the tag index are stored. TagIndex is the only
            # writer and keeps them identical inside a single transaction.
            connection.execute("""
                CREATE TABLE IF NOT EXISTS annotation_tags (
                    annotation_id VARCHAR NOT NULL,
                    tag VARCHAR NOT NULL,
                    PRIMARY KEY (annotation_id, tag)
                )
            """)
            connection.execute("""
                CREATE TABLE IF NOT EXISTS tag_annotations (
                    tag VARCHAR NOT NULL,
                    annotation_id VARCHAR NOT NULL,
                    PRIMARY KEY (tag, annotation_id)
                )
            """)
            connection.execute(
                "CREATE INDEX IF NOT EXISTS tag_annotations_by_id ON tag_annotations (annotation_id)"
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS annotation_tags_by_tag ON annotation_tags (tag)"
            )

            connection.execute("""
                CREATE TABLE IF NOT EXISTS sync_watermarks (
                    group_id VARCHAR PRIMARY KEY,
                    watermark VARCHAR NOT NULL
                )
            """)

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Run a block of statements atomically.

        Holds the lock for the whole block so readers on other threads see
        either the state before or after it, never in between.
        """
        connection = self._require_connection()
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                connection.begin()
            self._depth += 1
            try:
                yield connection
            except BaseException:
                self._depth -= 1
                if outermost:
                    connection.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    connection.commit()

    def execute(self, query: str, params: Optional[list] = None) -> list:
        """Run a read query under the lock and fetch every row."""
        connection = self._require_connection()
        with self.lock:
            return connection.execute(query, params or []).fetchall()

    def upsert_annotation(self, annotation: Annotation) -> bool:
        """
        Insert or replace a stored annotation.

        Args:
            annotation: The annotation to store

        Returns:
            True if the annotation was new, False if it replaced an existing row
        """
        with self.transaction() as connection:
            existing = connection.execute(
                "SELECT 1 FROM annotations WHERE annotation_id = ?",
                [annotation.id]
            ).fetchone()
            connection.execute("""
                INSERT INTO annotations (annotation_id, group_id, created, updated, payload)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (annotation_id) DO UPDATE SET
                    group_id = excluded.group_id,
                    created = excluded.created,
                    updated = excluded.updated,
                    payload = excluded.payload
            """, [
                annotation.id,
                annotation.group,
                annotation.created.isoformat(),
                annotation.updated.isoformat(),
                annotation.model_dump_json()
            ])
            return existing is None

    def get_annotation(self, annotation_id: str) -> Annotation:
        """
        Retrieve a stored annotation by ID.

        Raises:
            NotFound: If the annotation is not stored locally
        """
        rows = self.execute(
            "SELECT payload FROM annotations WHERE annotation_id = ?",
            [annotation_id]
        )
        if not rows:
            raise NotFound(f"Couldn't find an annotation with ID {annotation_id!r}",
                           annotation_id=annotation_id)
        return Annotation.model_validate_json(rows[0][0])

    def get_annotations(self, annotation_ids: List[str]) -> List[Annotation]:
        """Retrieve several annotations, in the order given."""
        return [self.get_annotation(annotation_id) for annotation_id in annotation_ids]

    def list_annotations(self, group_id: Optional[str] = None) -> List[Annotation]:
        """
        List stored annotations, optionally only those of one group.

        Returns:
            Annotations ordered by creation time, then ID
        """
        if group_id is not None:
            rows = self.execute("""
                SELECT payload FROM annotations
                WHERE group_id = ?
                ORDER BY created, annotation_id
            """, [group_id])
        else:
            rows = self.execute("""
                SELECT payload FROM annotations
                ORDER BY created, annotation_id
            """)
        return [Annotation.model_validate_json(row[0]) for row in rows]

    def delete_annotation(self, annotation_id: str) -> bool:
        """
        Delete a stored annotation row.

        Returns:
            True if a row was deleted
        """
        with self.transaction() as connection:
            existing = connection.execute(
                "SELECT 1 FROM annotations WHERE annotation_id = ?",
                [annotation_id]
            ).fetchone()
            if existing is None:
                return False
            connection.execute(
                "DELETE FROM annotations WHERE annotation_id = ?",
                [annotation_id]
            )
            return True

    def count_annotations(self) -> int:
        return self.execute("SELECT COUNT(*) FROM annotations")[0][0]

    def get_watermark(self, group_id: str) -> Optional[datetime]:
        """
        Get the sync watermark for a group.

        Returns:
            The watermark, or None if the group was never synced
        """
        rows = self.execute(
            "SELECT watermark FROM sync_watermarks WHERE group_id = ?",
            [group_id]
        )
        if not rows:
            return None
        return as_utc(datetime.fromisoformat(rows[0][0]))

    def advance_watermark(self, group_id: str, watermark: datetime) -> datetime:
        """
        Move a group's watermark forward.

        A watermark earlier than the stored one is ignored; only reset_watermarks
        moves it back.

        Returns:
            The stored watermark after the call
        """
        watermark = as_utc(watermark)
        with self.transaction() as connection:
            current = self.get_watermark(group_id)
            if current is not None and current >= watermark:
                return current
            connection.execute("""
                INSERT INTO sync_watermarks (group_id, watermark) VALUES (?, ?)
                ON CONFLICT (group_id) DO UPDATE SET watermark = excluded.watermark
            """, [group_id, watermark.isoformat()])
            logging.info(f"Advanced watermark for group {group_id} to {watermark.isoformat()}")
            return watermark

    def reset_watermarks(self, group_id: Optional[str] = None):
        """Forget the watermark of one group, or of every group."""
        with self.transaction() as connection:
            if group_id is None:
                connection.execute("DELETE FROM sync_watermarks")
            else:
                connection.execute("DELETE FROM sync_watermarks WHERE group_id = ?", [group_id])
        logging.info(f"Reset sync watermark for {group_id or 'all groups'}")

    def clear(self):
        """Remove every annotation, tag index entry and watermark."""
        with self.transaction() as connection:
            for table in ("annotations", "annotation_tags", "tag_annotations", "sync_watermarks"):
                connection.execute(f"DELETE FROM {table}")
        logging.info("Cleared local annotation database")
