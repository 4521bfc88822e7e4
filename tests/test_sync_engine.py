"""
Tests for the sync engine against the in-memory mock service.
"""

import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from gleaner.config import ConfigManager, GleanerContext
from gleaner.database import DatabaseManager, TagIndex
from gleaner.errors import GleanerError, RemoteError
from gleaner.models import Annotation, FilterSpec
from gleaner.remote import MockRemote
from gleaner.sync import SyncEngine, SyncState, WriteBackStatus


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_annotation(annotation_id, tags=(), minutes=0, group="g1", **fields):
    moment = T0 + timedelta(minutes=minutes)
    return Annotation(id=annotation_id, created=moment, updated=moment,
                      tags=list(tags), group=group, **fields)


class SyncTestCase(unittest.TestCase):
    """Shared fixtures: a temporary database, a mock service and an engine."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = ConfigManager(str(Path(self.temp_dir) / "gleaner.yaml"))
        self.context = GleanerContext.from_config(self.config, group="g1")
        self.db = DatabaseManager(str(Path(self.temp_dir) / "sync.duckdb"))
        self.db.connect()
        self.db.initialize_database()
        self.index = TagIndex(self.db)
        self.remote = MockRemote(page_size=2)
        self.engine = SyncEngine(self.context, self.db, self.index, self.remote)

    def tearDown(self):
        self.db.disconnect()
        shutil.rmtree(self.temp_dir)

    def local_ids(self):
        return [a.id for a in self.db.list_annotations()]


class TestSync(SyncTestCase):
    """Test pulling and reconciling."""

    def test_initial_sync_pulls_every_page(self):
        for i in range(5):
            self.remote.add(make_annotation(f"a{i}", ["x"], minutes=i))
        self.remote.add(make_annotation("other", minutes=1, group="g2"))

        report = self.engine.sync()

        self.assertEqual(report.added, 5)
        self.assertEqual(report.updated, 0)
        self.assertEqual(self.local_ids(), ["a0", "a1", "a2", "a3", "a4"])
        self.assertEqual(self.index.get_ids("x"), {f"a{i}" for i in range(5)})
        self.assertEqual(report.watermark, T0 + timedelta(minutes=4))
        self.assertEqual(self.db.get_watermark("g1"), T0 + timedelta(minutes=4))
        self.assertEqual(self.engine.state(), SyncState.IDLE)

    def test_incremental_sync_applies_updates(self):
        self.remote.add(make_annotation("a", ["x"], minutes=0))
        self.remote.add(make_annotation("b", ["y"], minutes=1))
        self.engine.sync()

        self.remote.update_tags("a", ["z"])
        calls_before = len(self.remote.calls)
        report = self.engine.sync()

        self.assertEqual((report.added, report.updated), (0, 1))
        self.assertEqual(self.index.get_tags("a"), {"z"})
        self.assertEqual(self.index.get_ids("x"), set())
        self.assertEqual(self.index.get_tags("b"), {"y"})
        # Only the changed annotation was fetched
        self.assertEqual(len(self.remote.calls) - calls_before, 1)

    def test_empty_sync_keeps_watermark(self):
        self.remote.add(make_annotation("a", minutes=3))
        self.engine.sync()

        report = self.engine.sync()

        self.assertEqual(report.total, 0)
        self.assertEqual(report.watermark, T0 + timedelta(minutes=3))

    def test_page_failure_aborts_without_ingesting(self):
        for i in range(5):
            self.remote.add(make_annotation(f"a{i}", minutes=i))
        self.remote.fail_on_page = 1

        with self.assertRaises(RemoteError):
            self.engine.sync()

        self.assertEqual(self.local_ids(), [])
        self.assertIsNone(self.db.get_watermark("g1"))
        self.assertEqual(self.engine.state("g1"), SyncState.IDLE)

        self.remote.fail_on_page = None
        self.assertEqual(self.engine.sync().added, 5)

    def test_ignored_annotations_are_dropped(self):
        self.remote.add(make_annotation("a", ["x"]))
        self.remote.add(make_annotation("b", ["x"], minutes=1))
        self.engine.sync()

        self.remote.update_tags("a", ["x", self.config.ignore_tag])
        report = self.engine.sync()

        self.assertEqual(report.removed, 1)
        self.assertEqual(self.local_ids(), ["b"])
        self.assertFalse(self.index.contains("a"))

    def test_reset_rebuilds_group(self):
        self.remote.add(make_annotation("a", ["x"]))
        self.remote.add(make_annotation("b", ["y"], minutes=1))
        self.engine.sync()

        # Deleted remotely without the mirror noticing
        del self.remote.annotations["a"]
        self.assertEqual(self.engine.sync().total, 0)
        self.assertIn("a", self.local_ids())

        report = self.engine.reset()

        self.assertEqual(report.added, 1)
        self.assertEqual(self.local_ids(), ["b"])
        self.assertFalse(self.index.contains("a"))
        self.index.check_consistency()

    def test_full_sync_ignores_watermark(self):
        self.remote.add(make_annotation("a", ["x"]))
        self.engine.sync()

        report = self.engine.sync(full=True)

        self.assertEqual((report.added, report.updated), (0, 1))


class TestWriteBack(SyncTestCase):
    """Test tag edits, deletion and moves."""

    def setUp(self):
        super().setUp()
        self.remote.add(make_annotation("a", ["x"]))
        self.remote.add(make_annotation("b", ["x", "y"], minutes=1))
        self.remote.add(make_annotation("c", [], minutes=2))
        self.engine.sync()

    def test_add_tag(self):
        annotations = self.db.list_annotations()
        results = self.engine.add_tag(annotations, "y")

        self.assertEqual([r.status for r in results],
                         [WriteBackStatus.APPLIED, WriteBackStatus.SKIPPED, WriteBackStatus.APPLIED])
        self.assertEqual(self.index.get_ids("y"), {"a", "b", "c"})
        self.assertEqual(self.remote.annotations["a"].tags, ["x", "y"])
        self.assertEqual(self.index.untagged_ids(), set())
        self.assertNotIn(("update_tags", "b"), self.remote.calls)

    def test_add_empty_tag(self):
        with self.assertRaises(ValueError):
            self.engine.add_tag(self.db.list_annotations(), "")

    def test_remove_tag(self):
        results = self.engine.remove_tag(self.db.list_annotations(), "x")

        self.assertEqual(sum(1 for r in results if r.status == WriteBackStatus.APPLIED), 2)
        self.assertEqual(self.index.get_ids("x"), set())
        self.assertEqual(self.index.untagged_ids(), {"a", "c"})
        self.assertEqual(self.remote.annotations["b"].tags, ["y"])

    def test_remote_failure_changes_nothing(self):
        self.remote.fail_operations.add("update_tags")

        results = self.engine.add_tag(self.db.list_annotations(), "new")

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].status, WriteBackStatus.REMOTE_FAILED)
        self.assertIsInstance(results[0].error, RemoteError)
        self.assertEqual(self.index.get_ids("new"), set())
        self.assertEqual(self.remote.annotations["a"].tags, ["x"])

    def test_local_failure_is_repaired_by_next_sync(self):
        with patch.object(self.index, "put", side_effect=GleanerError("disk trouble")):
            results = self.engine.add_tag([self.db.get_annotation("a")], "z")

        self.assertEqual(results[0].status, WriteBackStatus.LOCAL_PENDING)
        self.assertFalse(results[0].ok)
        self.assertEqual(self.index.get_ids("z"), set())
        self.assertEqual(self.remote.annotations["a"].tags, ["x", "z"])

        self.engine.sync()
        self.assertEqual(self.index.get_ids("z"), {"a"})

    def test_delete_ignores_remotely(self):
        results = self.engine.delete([self.db.get_annotation("a")])

        self.assertTrue(results[0].ok)
        self.assertEqual(results[0].operation, "ignore")
        self.assertNotIn("a", self.local_ids())
        self.assertFalse(self.index.contains("a"))
        self.assertIn(self.config.ignore_tag, self.remote.annotations["a"].tags)

        # Later syncs don't bring it back
        self.engine.sync(full=True)
        self.assertNotIn("a", self.local_ids())

    def test_delete_remote(self):
        self.engine.delete([self.db.get_annotation("b")], remote=True)

        self.assertNotIn("b", self.remote.annotations)
        self.assertNotIn("b", self.local_ids())
        self.assertEqual(self.index.get_ids("y"), set())

    def test_move(self):
        spec = FilterSpec.create(tags=("x",))
        report = self.engine.move("g1", "g2", spec)

        self.assertEqual(report.moved, 2)
        self.assertEqual(self.remote.annotations["a"].group, "g2")
        self.assertEqual(self.remote.annotations["c"].group, "g1")
        self.assertEqual(self.db.get_annotation("a").group, "g2")
        self.assertEqual(report.sync.group, "g2")
        self.assertEqual(report.sync.updated, 2)
        self.assertEqual(self.db.get_watermark("g2"), self.remote.annotations["b"].updated)


if __name__ == '__main__':
    unittest.main(verbosity=2)
