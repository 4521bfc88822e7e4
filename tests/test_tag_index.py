"""
Tests for the local database and the bidirectional tag index.
"""

import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from gleaner.database import DatabaseManager, TagIndex, EMPTY_TAG
from gleaner.errors import InconsistentIndex, NotFound
from gleaner.models import Annotation


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_annotation(annotation_id, tags=(), minutes=0, group="__world__"):
    moment = T0 + timedelta(minutes=minutes)
    return Annotation(id=annotation_id, created=moment, updated=moment,
                      tags=list(tags), group=group)


class TestDatabaseManager(unittest.TestCase):
    """Test annotation storage and watermarks."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db = DatabaseManager(str(Path(self.temp_dir) / "test.duckdb"))
        self.db.connect()
        self.db.initialize_database()

    def tearDown(self):
        self.db.disconnect()
        shutil.rmtree(self.temp_dir)

    def test_upsert_and_get(self):
        annotation = make_annotation("a1", ["x"])

        self.assertTrue(self.db.upsert_annotation(annotation))
        self.assertFalse(self.db.upsert_annotation(annotation.model_copy(update={"text": "edited"})))

        stored = self.db.get_annotation("a1")
        self.assertEqual(stored.text, "edited")
        self.assertEqual(stored.created, T0)
        self.assertEqual(self.db.count_annotations(), 1)

    def test_get_missing(self):
        with self.assertRaises(NotFound):
            self.db.get_annotation("nope")

    def test_list_ordered_by_created(self):
        self.db.upsert_annotation(make_annotation("late", minutes=5))
        self.db.upsert_annotation(make_annotation("early", minutes=1, group="g2"))

        self.assertEqual([a.id for a in self.db.list_annotations()], ["early", "late"])
        self.assertEqual([a.id for a in self.db.list_annotations("g2")], ["early"])

    def test_delete(self):
        self.db.upsert_annotation(make_annotation("a1"))
        self.assertTrue(self.db.delete_annotation("a1"))
        self.assertFalse(self.db.delete_annotation("a1"))

    def test_watermark_is_monotonic(self):
        self.assertIsNone(self.db.get_watermark("g"))

        self.db.advance_watermark("g", T0 + timedelta(hours=2))
        result = self.db.advance_watermark("g", T0 + timedelta(hours=1))

        self.assertEqual(result, T0 + timedelta(hours=2))
        self.assertEqual(self.db.get_watermark("g"), T0 + timedelta(hours=2))

        self.db.reset_watermarks("g")
        self.assertIsNone(self.db.get_watermark("g"))

    def test_transaction_rolls_back(self):
        with self.assertRaises(RuntimeError):
            with self.db.transaction():
                self.db.upsert_annotation(make_annotation("a1"))
                raise RuntimeError("boom")

        self.assertEqual(self.db.count_annotations(), 0)

    def test_context_manager(self):
        with DatabaseManager(str(Path(self.temp_dir) / "other.duckdb")) as db:
            db.upsert_annotation(make_annotation("a1"))
            self.assertEqual(db.count_annotations(), 1)
        self.assertIsNone(db.connection)


class TestTagIndex(unittest.TestCase):
    """Test the bidirectional tag index."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db = DatabaseManager(str(Path(self.temp_dir) / "index.duckdb"))
        self.db.connect()
        self.db.initialize_database()
        self.index = TagIndex(self.db)

    def tearDown(self):
        self.db.disconnect()
        shutil.rmtree(self.temp_dir)

    def test_put_and_lookup_both_ways(self):
        self.index.put("a1", ["x", "y"])
        self.index.put("a2", ["y"])

        self.assertEqual(self.index.get_tags("a1"), {"x", "y"})
        self.assertEqual(self.index.get_ids("y"), {"a1", "a2"})
        self.assertEqual(self.index.get_ids("x"), {"a1"})
        self.index.check_consistency()

    def test_put_applies_only_the_difference(self):
        self.index.put("a1", ["x", "y"])
        added, removed = self.index.put("a1", ["y", "z"])

        self.assertEqual(added, {"z"})
        self.assertEqual(removed, {"x"})
        self.assertEqual(self.index.get_ids("x"), set())
        self.assertEqual(self.index.get_tags("a1"), {"y", "z"})

    def test_put_is_idempotent(self):
        self.index.put("a1", ["x"])
        self.assertEqual(self.index.put("a1", ["x"]), (set(), set()))

    def test_untagged_annotations(self):
        self.index.put("a1", [])

        self.assertEqual(self.index.get_tags("a1"), set())
        self.assertEqual(self.index.untagged_ids(), {"a1"})
        self.assertNotIn(EMPTY_TAG, self.index.all_tags())

        self.index.put("a1", ["x"])
        self.assertEqual(self.index.untagged_ids(), set())

    def test_blank_tags_are_dropped(self):
        self.index.put("a1", ["", "  ", "x"])
        self.assertEqual(self.index.get_tags("a1"), {"x"})

    def test_unknown_annotation(self):
        with self.assertRaises(NotFound):
            self.index.get_tags("missing")
        self.assertEqual(self.index.get_ids("never-seen"), set())

    def test_remove(self):
        self.index.put("a1", ["x"])
        self.index.put("a2", ["x", "y"])

        self.assertTrue(self.index.remove("a1"))
        self.assertFalse(self.index.remove("a1"))
        self.assertFalse(self.index.contains("a1"))
        self.assertEqual(self.index.get_ids("x"), {"a2"})
        self.assertEqual(self.index.all_ids(), {"a2"})

    def test_tag_counts(self):
        self.index.put("a1", ["x"])
        self.index.put("a2", ["x", "y"])
        self.index.put("a3", [])

        self.assertEqual(self.index.tag_counts(), {"x": 2, "y": 1})
        self.assertEqual(self.index.all_tags(), {"x", "y"})

    def test_detects_inconsistency(self):
        self.index.put("a1", ["x"])
        # Corrupt one side directly
        self.db.connection.execute("DELETE FROM tag_annotations WHERE annotation_id = 'a1'")

        with self.assertRaises(InconsistentIndex):
            self.index.get_tags("a1")
        with self.assertRaises(InconsistentIndex):
            self.index.check_consistency()

    def test_failed_mutation_leaves_both_sides_untouched(self):
        self.index.put("a1", ["x"])

        with self.assertRaises(RuntimeError):
            with self.db.transaction():
                self.index.put("a1", ["y"])
                raise RuntimeError("crash after put")

        self.assertEqual(self.index.get_tags("a1"), {"x"})
        self.index.check_consistency()

    def test_concurrent_puts_stay_consistent(self):
        def writer(start):
            for i in range(start, start + 20):
                self.index.put(f"a{i % 5}", [f"t{i % 3}", f"t{(i + 1) % 3}"])

        threads = [threading.Thread(target=writer, args=(n * 20,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.index.check_consistency()
        for annotation_id in self.index.all_ids():
            for tag in self.index.get_tags(annotation_id):
                self.assertIn(annotation_id, self.index.get_ids(tag))


if __name__ == '__main__':
    unittest.main(verbosity=2)
