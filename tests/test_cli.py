"""
End-to-end tests for the command line entry point.
"""

import io
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import yaml

import main
from gleaner.database import DatabaseManager, TagIndex
from gleaner.models import Annotation
from gleaner.remote import MockRemote


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_annotation(annotation_id, tags=(), minutes=0, **fields):
    moment = T0 + timedelta(minutes=minutes)
    return Annotation(id=annotation_id, created=moment, updated=moment,
                      tags=list(tags), group="g1", **fields)


class TestCommandLine(unittest.TestCase):
    """Run commands against a mock service and temporary files."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "cli.duckdb"
        self.kb_dir = self.temp_dir / "kb"
        self.config_path = self.temp_dir / "gleaner.yaml"
        with open(self.config_path, 'w') as f:
            yaml.safe_dump({
                "hypothesis": {"group": "g1"},
                "database": {"filename": str(self.db_path)},
                "knowledge_base": {"directory": str(self.kb_dir)},
                "logging": {"level": "WARNING"},
            }, f)

        self.remote = MockRemote([
            make_annotation("a1", ["bee"], text="first"),
            make_annotation("a2", ["wasp"], minutes=1, text="second"),
        ])
        patcher = patch("main.make_remote", return_value=self.remote)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def run_main(self, *args):
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            main.main(["--config", str(self.config_path), *args])
        return stdout.getvalue()

    def local_tags(self, annotation_id):
        with DatabaseManager(str(self.db_path)) as db:
            return TagIndex(db).get_tags(annotation_id)

    def test_sync_and_make(self):
        output = self.run_main("sync")
        self.assertIn("2 added", output)

        self.run_main("make")
        self.assertTrue((self.kb_dir / "bee.md").exists())
        self.assertTrue((self.kb_dir / "wasp.md").exists())
        self.assertTrue((self.kb_dir / "_index.md").exists())

    def test_make_with_filter(self):
        self.run_main("sync")
        self.run_main("make", "--tags", "wasp", "--no-index")

        self.assertTrue((self.kb_dir / "wasp.md").exists())
        self.assertFalse((self.kb_dir / "bee.md").exists())
        self.assertFalse((self.kb_dir / "_index.md").exists())

    def test_tag_with_force(self):
        self.run_main("sync")
        output = self.run_main("tag", "insect", "--force")

        self.assertIn("Tagged 2 annotations", output)
        self.assertEqual(self.local_tags("a1"), {"bee", "insect"})
        self.assertEqual(self.remote.annotations["a2"].tags, ["wasp", "insect"])

    def test_tag_removal_with_filter(self):
        self.run_main("sync")
        self.run_main("tag", "bee", "--delete", "--force", "--tags", "bee")

        self.assertEqual(self.local_tags("a1"), set())
        self.assertEqual(self.remote.annotations["a1"].tags, [])

    def test_delete_asks_first(self):
        self.run_main("sync")
        with patch("builtins.input", return_value="no"):
            output = self.run_main("delete", "--tags", "bee")

        self.assertIn("Aborted", output)
        self.assertEqual(self.remote.calls, [c for c in self.remote.calls if c[0] == "list"])

        with patch("builtins.input", return_value="yes"):
            self.run_main("delete", "--tags", "bee")
        self.assertIn("gleaner_ignore", self.remote.annotations["a1"].tags)

    def test_view(self):
        self.run_main("sync")
        output = self.run_main("view", "--text", "second")

        self.assertIn("second", output)
        self.assertNotIn("first", output)

    def test_unknown_id_exits_with_error(self):
        self.run_main("sync")
        with patch("sys.stderr", new_callable=io.StringIO) as stderr:
            with self.assertRaises(SystemExit) as cm:
                self.run_main("view", "--id", "missing")

        self.assertEqual(cm.exception.code, 1)
        self.assertIn("missing", stderr.getvalue())

    def test_invalid_date_exits_with_error(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as cm:
                self.run_main("view", "--from", "someday")
        self.assertEqual(cm.exception.code, 1)

    def test_clear(self):
        self.run_main("sync")
        self.run_main("clear", "--force")

        with DatabaseManager(str(self.db_path)) as db:
            self.assertEqual(db.count_annotations(), 0)
            self.assertIsNone(db.get_watermark("g1"))

    def test_config_default_and_where(self):
        target = self.temp_dir / "fresh.yaml"
        self.run_main("config", "default", "--file", str(target))
        self.assertIn("hypothesis:", target.read_text())

        output = self.run_main("config", "where")
        self.assertIn(str(self.config_path.resolve()), output)

    def test_config_get_section(self):
        output = self.run_main("config", "get", "database")
        self.assertIn(str(self.db_path), output)
        self.assertNotIn("knowledge_base", output)

        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.run_main("config", "get", "nonsense")

    def stored_config(self):
        with open(self.config_path) as f:
            return yaml.safe_load(f)

    def mock_client(self, authorized=True, groups=None):
        client = MagicMock()
        client.__enter__.return_value = client
        client.authorize.return_value = authorized
        client.group_names.return_value = groups or {}
        return client

    def test_config_authorize(self):
        client = self.mock_client()
        with patch("main.make_client", return_value=client) as factory, \
                patch("builtins.input", return_value="alice"), \
                patch("getpass.getpass", return_value="secret"):
            output = self.run_main("config", "authorize")

        self.assertIn("Authorized as alice", output)
        self.assertEqual(factory.call_args[0][1:], ("alice", "secret"))
        hypothesis = self.stored_config()["hypothesis"]
        self.assertEqual(hypothesis["username"], "alice")
        self.assertEqual(hypothesis["key"], "secret")
        self.assertEqual(hypothesis["group"], "g1")

    def test_config_authorize_rejected(self):
        client = self.mock_client(authorized=False)
        with patch("main.make_client", return_value=client), \
                patch("builtins.input", return_value="alice"), \
                patch("getpass.getpass", return_value="wrong"), \
                patch("sys.stderr", new_callable=io.StringIO) as stderr:
            with self.assertRaises(SystemExit) as cm:
                self.run_main("config", "authorize")

        self.assertEqual(cm.exception.code, 1)
        self.assertIn("rejected", stderr.getvalue())
        self.assertNotIn("username", self.stored_config().get("hypothesis", {}))

    def test_config_group(self):
        config = self.stored_config()
        config["hypothesis"].update({"username": "alice", "key": "secret"})
        with open(self.config_path, 'w') as f:
            yaml.safe_dump(config, f)

        client = self.mock_client(groups={"g1": "Reading", "g2": "Research"})
        with patch("main.make_client", return_value=client):
            output = self.run_main("config", "group", "g2")

        self.assertIn("Research", output)
        self.assertEqual(self.stored_config()["hypothesis"]["group"], "g2")

        with patch("main.make_client", return_value=client), \
                patch("sys.stderr", new_callable=io.StringIO) as stderr:
            with self.assertRaises(SystemExit):
                self.run_main("config", "group", "g9")
        self.assertIn("g9", stderr.getvalue())
        self.assertEqual(self.stored_config()["hypothesis"]["group"], "g2")

    def test_config_group_needs_credentials(self):
        with patch.dict("os.environ", {"HYPOTHESIS_NAME": "", "HYPOTHESIS_KEY": ""}), \
                patch("main.make_client") as factory, \
                patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                self.run_main("config", "group", "g2")
        factory.assert_not_called()

    def test_view_by_id(self):
        self.run_main("sync")
        output = self.run_main("view", "--id", "a2", "--id", "a1")
        self.assertIn("first", output)
        self.assertIn("second", output)

        output = self.run_main("view", "--id", "a2")
        self.assertNotIn("first", output)


if __name__ == '__main__':
    unittest.main(verbosity=2)
