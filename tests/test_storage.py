"""Tests for the SQLite record store."""

import json
import shutil
import sqlite3
import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from arxiv_reader.errors import StorageError
from arxiv_reader.models import ArticleRecord, VersionInfo
from arxiv_reader.storage import SCHEMA_VERSION, RecordStore


def _version(number: int, title: str = "A title") -> VersionInfo:
    return VersionInfo(
        number=number,
        submitted=datetime(2025, 1, number, tzinfo=timezone.utc),
        title=title,
        abstract="Abstract",
        authors=["Alice"],
        categories=["cs.AI"],
        size="10kb",
        first_seen="2025-01-10",
    )


def _record(article_id: str = "2501.00001", versions: int = 1, **kwargs) -> ArticleRecord:
    return ArticleRecord(
        id=article_id,
        versions=[_version(n) for n in range(1, versions + 1)],
        **kwargs,
    )


class TestRecordStore(unittest.TestCase):
    """Test RecordStore class."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "db.sqlite"
        self.store = RecordStore(self.db_path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_schema_version_is_recorded(self):
        conn = sqlite3.connect(self.db_path)
        try:
            self.assertEqual(conn.execute("PRAGMA user_version").fetchone()[0], SCHEMA_VERSION)
        finally:
            conn.close()

    def test_newer_schema_is_refused(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.commit()
        conn.close()
        with self.assertRaises(StorageError):
            RecordStore(self.db_path)

    def test_batch_commits_records_and_cursor(self):
        with self.store.batch() as batch:
            batch.put(_record())
            batch.set_cursor("cs.AI", "mark-1")

        record = self.store.get("2501.00001")
        self.assertIsNotNone(record)
        self.assertEqual(record.max_version, 1)
        self.assertEqual(self.store.get_cursor("cs.AI").watermark, "mark-1")
        self.assertEqual(self.store.count(), 1)

    def test_batch_rolls_back_on_error(self):
        with self.store.batch() as batch:
            batch.put(_record())
            batch.set_cursor("cs.AI", "mark-1")

        with self.assertRaises(RuntimeError):
            with self.store.batch() as batch:
                batch.put(_record(versions=2))
                batch.put(_record("2501.00002"))
                batch.set_cursor("cs.AI", "mark-2")
                raise RuntimeError("simulated crash")

        self.assertEqual(self.store.get("2501.00001").max_version, 1)
        self.assertIsNone(self.store.get("2501.00002"))
        self.assertEqual(self.store.get_cursor("cs.AI").watermark, "mark-1")

    def test_batch_sees_its_own_writes(self):
        with self.store.batch() as batch:
            batch.put(_record())
            self.assertEqual(batch.get("2501.00001").max_version, 1)

    def test_put_refuses_to_drop_versions(self):
        with self.store.batch() as batch:
            batch.put(_record(versions=2))

        with self.assertRaises(StorageError):
            with self.store.batch() as batch:
                batch.put(_record(versions=1))
        self.assertEqual(self.store.get("2501.00001").max_version, 2)

    def test_put_refuses_to_rewrite_versions(self):
        with self.store.batch() as batch:
            batch.put(_record())

        rewritten = ArticleRecord(id="2501.00001", versions=[_version(1, title="Changed")])
        with self.assertRaises(StorageError):
            with self.store.batch() as batch:
                batch.put(rewritten)

    def test_put_rejects_invalid_record(self):
        with self.assertRaises(StorageError):
            with self.store.batch() as batch:
                batch.put(ArticleRecord(id="2501.00001", versions=[]))

    def test_sync_put_keeps_user_state(self):
        with self.store.batch() as batch:
            batch.put(_record())
        self.store.set_bookmarked("2501.00001", True)
        self.store.set_note("2501.00001", "important")
        self.store.acknowledge("2501.00001", 1)

        stale_copy = _record(versions=2)
        with self.store.batch() as batch:
            batch.put(stale_copy)

        record = self.store.get("2501.00001")
        self.assertEqual(record.max_version, 2)
        self.assertTrue(record.bookmarked)
        self.assertEqual(record.note, "important")
        self.assertEqual(record.last_seen_version, 1)

    def test_user_updates_on_unknown_article(self):
        self.assertFalse(self.store.set_bookmarked("9999.99999", True))
        self.assertFalse(self.store.set_note("9999.99999", "x"))
        self.assertFalse(self.store.acknowledge("9999.99999", 1))

    def test_acknowledge_is_monotonic_and_capped(self):
        with self.store.batch() as batch:
            batch.put(_record(versions=3))

        self.store.acknowledge("2501.00001", 2, "J. Ref")
        self.store.acknowledge("2501.00001", 1)
        record = self.store.get("2501.00001")
        self.assertEqual(record.last_seen_version, 2)
        self.assertEqual(record.seen_journal_ref, "J. Ref")

        self.store.acknowledge("2501.00001", 10)
        self.assertEqual(self.store.get("2501.00001").last_seen_version, 3)

    def test_iter_records_is_ordered(self):
        with self.store.batch() as batch:
            batch.put(_record("2501.00002"))
            batch.put(_record("2501.00001"))
        self.assertEqual([r.id for r in self.store.iter_records()], ["2501.00001", "2501.00002"])
        self.assertEqual(set(self.store.all_records()), {"2501.00001", "2501.00002"})

    def test_corrupt_row_raises_storage_error(self):
        with self.store.batch() as batch:
            batch.put(_record())
        conn = sqlite3.connect(self.db_path)
        conn.execute("UPDATE article SET versions = 'not json'")
        conn.commit()
        conn.close()
        with self.assertRaises(StorageError):
            self.store.get("2501.00001")

    def test_unchanged_cursor_is_not_rewritten(self):
        with self.store.batch() as batch:
            self.assertTrue(batch.set_cursor("cs.AI", "mark-1"))
        before = self.store.get_cursor("cs.AI")

        with self.store.batch() as batch:
            self.assertFalse(batch.set_cursor("cs.AI", "mark-1"))
            self.assertEqual(batch.cursors, {})
        self.assertEqual(self.store.get_cursor("cs.AI"), before)

        with self.store.batch() as batch:
            self.assertTrue(batch.set_cursor("cs.AI", None))
        self.assertIsNone(self.store.get_cursor("cs.AI").watermark)

    def test_classification_columns(self):
        with self.store.batch() as batch:
            batch.put(_record(acm_classes="I.2.6", msc_classes="68T05"))
        record = self.store.get("2501.00001")
        self.assertEqual((record.acm_classes, record.msc_classes), ("I.2.6", "68T05"))

    def test_version_1_database_is_migrated(self):
        path = Path(self.temp_dir) / "old.sqlite"
        conn = sqlite3.connect(path)
        conn.executescript("""
            CREATE TABLE article (
                id TEXT PRIMARY KEY, versions TEXT NOT NULL, max_version INTEGER NOT NULL,
                journal_ref TEXT, doi TEXT, comments TEXT, last_change TEXT,
                bookmarked INTEGER NOT NULL DEFAULT 0, note TEXT NOT NULL DEFAULT '',
                last_seen_version INTEGER NOT NULL DEFAULT 0, seen_journal_ref TEXT
            );
            CREATE TABLE cursor (category TEXT PRIMARY KEY, watermark TEXT, updated_at TEXT);
            PRAGMA user_version = 1;
        """)
        versions = json.dumps([_version(1).to_dict()])
        conn.execute(
            "INSERT INTO article (id, versions, max_version, bookmarked) VALUES (?, ?, 1, 1)",
            ("2501.00001", versions),
        )
        conn.commit()
        conn.close()

        store = RecordStore(path)
        record = store.get("2501.00001")
        self.assertTrue(record.bookmarked)
        self.assertIsNone(record.acm_classes)


class TestDumpAndLoad(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = RecordStore(Path(self.temp_dir) / "db.sqlite")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_dump_and_load_into_empty_store(self):
        with self.store.batch() as batch:
            batch.put(_record(versions=2, journal_ref="J. Test"))
            batch.set_cursor("cs.AI", "mark")
        self.store.set_bookmarked("2501.00001", True)

        dump_path = Path(self.temp_dir) / "dump.json"
        self.assertEqual(self.store.dump_json(dump_path), 1)
        data = json.loads(dump_path.read_text(encoding="utf-8"))
        self.assertEqual(data["cursors"], {"cs.AI": "mark"})

        other = RecordStore(Path(self.temp_dir) / "other.sqlite")
        self.assertEqual(other.load_json(dump_path), 1)
        self.assertEqual(other.get("2501.00001"), self.store.get("2501.00001"))
        self.assertEqual(other.get_cursor("cs.AI").watermark, "mark")

    def test_load_never_moves_backwards(self):
        old = RecordStore(Path(self.temp_dir) / "old.sqlite")
        with old.batch() as batch:
            batch.put(_record(versions=1))
            batch.set_cursor("cs.AI", "old-mark")
        old.set_note("2501.00001", "from dump")
        dump_path = Path(self.temp_dir) / "old.json"
        old.dump_json(dump_path)

        with self.store.batch() as batch:
            batch.put(_record(versions=3, journal_ref="J. New"))
            batch.set_cursor("cs.AI", "new-mark")
        self.store.acknowledge("2501.00001", 2)

        self.store.load_json(dump_path)
        record = self.store.get("2501.00001")
        self.assertEqual(record.max_version, 3)
        self.assertEqual(record.journal_ref, "J. New")
        self.assertEqual(record.last_seen_version, 2)
        self.assertEqual(record.note, "from dump")
        self.assertEqual(self.store.get_cursor("cs.AI").watermark, "new-mark")

    def test_load_appends_newer_versions(self):
        newer = RecordStore(Path(self.temp_dir) / "newer.sqlite")
        with newer.batch() as batch:
            batch.put(_record(versions=2))
        dump_path = Path(self.temp_dir) / "newer.json"
        newer.dump_json(dump_path)

        with self.store.batch() as batch:
            batch.put(replace(_record(versions=1), bookmarked=True))

        self.store.load_json(dump_path)
        record = self.store.get("2501.00001")
        self.assertEqual([v.number for v in record.versions], [1, 2])
        self.assertTrue(record.bookmarked)


if __name__ == "__main__":
    unittest.main()
