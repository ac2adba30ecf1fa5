"""SQLite-backed store for article records and per-category sync cursors."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .errors import StorageError
from .models import ArticleRecord, SyncCursor, VersionInfo

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_ARTICLE_COLUMNS = (
    "id, versions, max_version, journal_ref, doi, comments, acm_classes, msc_classes, "
    "last_change, bookmarked, note, last_seen_version, seen_journal_ref"
)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Re-raise database and decoding failures as StorageError."""
    try:
        yield
    except StorageError:
        raise
    except (sqlite3.Error, ValueError, KeyError, TypeError) as e:
        logger.error(f"Storage failure while {action}: {e}")
        raise StorageError(f"{action}: {e}") from e


def _row_to_record(row: sqlite3.Row) -> ArticleRecord:
    versions = [VersionInfo.from_dict(v) for v in json.loads(row["versions"])]
    record = ArticleRecord(
        id=row["id"],
        versions=versions,
        journal_ref=row["journal_ref"],
        doi=row["doi"],
        comments=row["comments"],
        acm_classes=row["acm_classes"],
        msc_classes=row["msc_classes"],
        last_change=row["last_change"],
        bookmarked=bool(row["bookmarked"]),
        note=row["note"] or "",
        last_seen_version=row["last_seen_version"],
        seen_journal_ref=row["seen_journal_ref"],
    )
    record.validate()
    return record


def _check_append_only(old: ArticleRecord, new: ArticleRecord) -> None:
    """Make sure ``new`` keeps every stored version of ``old`` untouched."""
    if len(new.versions) < len(old.versions):
        raise StorageError(
            f"refusing to drop stored versions of {old.id} "
            f"({len(old.versions)} stored, {len(new.versions)} given)"
        )
    for stored, given in zip(old.versions, new.versions):
        if stored.to_dict() != given.to_dict():
            raise StorageError(
                f"refusing to rewrite stored version v{stored.number} of {old.id}"
            )


class StoreBatch:
    """Writes performed inside one RecordStore transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self.written: List[str] = []
        self.cursors: Dict[str, Optional[str]] = {}

    def get(self, article_id: str) -> Optional[ArticleRecord]:
        """Read a record as seen by this transaction."""
        with _storage_errors(f"reading {article_id}"):
            row = self._conn.execute(
                f"SELECT {_ARTICLE_COLUMNS} FROM article WHERE id = ?", (article_id,)
            ).fetchone()
            return _row_to_record(row) if row else None

    def get_cursor(self, category: str) -> Optional[SyncCursor]:
        with _storage_errors(f"reading cursor for {category}"):
            row = self._conn.execute(
                "SELECT category, watermark, updated_at FROM cursor WHERE category = ?",
                (category,),
            ).fetchone()
            return SyncCursor(*row) if row else None

    def put(self, record: ArticleRecord, user_state: bool = False) -> None:
        """
        Insert or extend a record.

        Remote metadata is always written. The user columns (bookmark, note,
        acknowledgement) are only written for new rows unless ``user_state``
        is set.

        Args:
            record: Record to write
            user_state: Also overwrite bookmark, note and acknowledgement state
        """
        try:
            record.validate()
        except ValueError as e:
            raise StorageError(str(e)) from e

        existing = self.get(record.id)
        if existing is not None:
            _check_append_only(existing, record)

        with _storage_errors(f"writing {record.id}"):
            self._write(record, existing is None, user_state)
        self.written.append(record.id)

    def _write(self, record: ArticleRecord, is_new: bool, user_state: bool) -> None:
        versions_json = json.dumps([v.to_dict() for v in record.versions], ensure_ascii=False)
        params = (
            record.id,
            versions_json,
            record.max_version,
            record.journal_ref,
            record.doi,
            record.comments,
            record.acm_classes,
            record.msc_classes,
            record.last_change,
            int(record.bookmarked),
            record.note,
            record.last_seen_version,
            record.seen_journal_ref,
        )
        if is_new:
            placeholders = ", ".join("?" * len(params))
            self._conn.execute(
                f"INSERT INTO article ({_ARTICLE_COLUMNS}) VALUES ({placeholders})",
                params,
            )
        elif user_state:
            self._conn.execute(
                """
                UPDATE article SET versions = ?, max_version = ?, journal_ref = ?, doi = ?,
                    comments = ?, acm_classes = ?, msc_classes = ?, last_change = ?,
                    bookmarked = ?, note = ?, last_seen_version = ?, seen_journal_ref = ?
                WHERE id = ?
                """,
                params[1:] + (record.id,),
            )
        else:
            self._conn.execute(
                """
                UPDATE article SET versions = ?, max_version = ?, journal_ref = ?, doi = ?,
                    comments = ?, acm_classes = ?, msc_classes = ?, last_change = ?
                WHERE id = ?
                """,
                params[1:9] + (record.id,),
            )

    def set_cursor(self, category: str, watermark: Optional[str]) -> bool:
        """
        Record the feed position up to which ``category`` is merged.

        An unchanged watermark leaves the row (and ``updated_at``) as it is.

        Returns:
            True if the cursor row changed
        """
        now = datetime.now(timezone.utc).isoformat()
        with _storage_errors(f"writing cursor for {category}"):
            cursor = self._conn.execute(
                """
                INSERT INTO cursor (category, watermark, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(category) DO UPDATE SET
                    watermark = excluded.watermark,
                    updated_at = excluded.updated_at
                WHERE cursor.watermark IS NOT excluded.watermark
                """,
                (category, watermark, now),
            )
        if cursor.rowcount <= 0:
            return False
        self.cursors[category] = watermark
        return True


class RecordStore:
    """
    Persistent, versioned storage of article records and sync cursors.

    Every operation opens its own short-lived connection, so a store can be
    shared between threads. Writes are serialized by a process-wide lock and
    run inside ``BEGIN IMMEDIATE`` transactions, which also keeps a second
    process from interleaving a batch.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite database file
            timeout: Seconds to wait for a lock held by another process
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._write_lock = threading.RLock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with _storage_errors("initializing database"), self._write_lock, self._connection() as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            if version > SCHEMA_VERSION:
                raise StorageError(
                    f"database schema version {version} is newer than supported ({SCHEMA_VERSION})"
                )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS article (
                        id TEXT PRIMARY KEY,
                        versions TEXT NOT NULL,
                        max_version INTEGER NOT NULL,
                        journal_ref TEXT,
                        doi TEXT,
                        comments TEXT,
                        acm_classes TEXT,
                        msc_classes TEXT,
                        last_change TEXT,
                        bookmarked INTEGER NOT NULL DEFAULT 0,
                        note TEXT NOT NULL DEFAULT '',
                        last_seen_version INTEGER NOT NULL DEFAULT 0,
                        seen_journal_ref TEXT
                    );
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cursor (
                        category TEXT PRIMARY KEY,
                        watermark TEXT,
                        updated_at TEXT
                    );
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_bookmarked ON article(bookmarked);")
                if version == 1:
                    # Version 1 stored no ACM/MSC classes.
                    conn.execute("ALTER TABLE article ADD COLUMN acm_classes TEXT")
                    conn.execute("ALTER TABLE article ADD COLUMN msc_classes TEXT")
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def batch(self) -> Iterator[StoreBatch]:
        """
        Run a group of writes atomically.

        The batch commits when the block exits normally and rolls back if it
        raises, so a crash leaves either the old or the new state.

        Yields:
            StoreBatch bound to the open transaction
        """
        with self._write_lock, self._connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"starting transaction: {e}") from e
            batch = StoreBatch(conn)
            try:
                yield batch
                with _storage_errors("committing batch"):
                    conn.execute("COMMIT")
            except BaseException:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as e:
                    logger.error(f"Rollback failed: {e}")
                raise
        if batch.written or batch.cursors:
            logger.debug(
                f"Committed {len(batch.written)} records, cursors {sorted(batch.cursors)}"
            )

    def get(self, article_id: str) -> Optional[ArticleRecord]:
        """Point lookup by identifier."""
        with _storage_errors(f"reading {article_id}"), self._connection() as conn:
            row = conn.execute(
                f"SELECT {_ARTICLE_COLUMNS} FROM article WHERE id = ?", (article_id,)
            ).fetchone()
            return _row_to_record(row) if row else None

    def iter_records(self) -> Iterator[ArticleRecord]:
        """Iterate over all stored records, ordered by identifier."""
        with _storage_errors("scanning articles"), self._connection() as conn:
            for row in conn.execute(f"SELECT {_ARTICLE_COLUMNS} FROM article ORDER BY id"):
                yield _row_to_record(row)

    def all_records(self) -> Dict[str, ArticleRecord]:
        return {record.id: record for record in self.iter_records()}

    def count(self) -> int:
        with _storage_errors("counting articles"), self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM article").fetchone()[0]

    def get_cursor(self, category: str) -> Optional[SyncCursor]:
        with _storage_errors(f"reading cursor for {category}"), self._connection() as conn:
            row = conn.execute(
                "SELECT category, watermark, updated_at FROM cursor WHERE category = ?",
                (category,),
            ).fetchone()
            if row is None:
                return None
            return SyncCursor(row["category"], row["watermark"], row["updated_at"])

    def cursors(self) -> List[SyncCursor]:
        with _storage_errors("reading cursors"), self._connection() as conn:
            rows = conn.execute(
                "SELECT category, watermark, updated_at FROM cursor ORDER BY category"
            ).fetchall()
            return [SyncCursor(r["category"], r["watermark"], r["updated_at"]) for r in rows]

    def _update(self, action: str, sql: str, params: tuple) -> bool:
        """Run one single-statement write transaction."""
        with _storage_errors(action), self._write_lock, self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(sql, params)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            return cursor.rowcount > 0

    def set_bookmarked(self, article_id: str, bookmarked: bool = True) -> bool:
        """
        Set or clear the bookmark flag.

        Returns:
            True if the article exists
        """
        return self._update(
            f"bookmarking {article_id}",
            "UPDATE article SET bookmarked = ? WHERE id = ?",
            (int(bookmarked), article_id),
        )

    def set_note(self, article_id: str, note: str) -> bool:
        """Replace the free-text note of an article."""
        return self._update(
            f"writing note for {article_id}",
            "UPDATE article SET note = ? WHERE id = ?",
            (note or "", article_id),
        )

    def acknowledge(self, article_id: str, version: int, journal_ref: Optional[str] = None) -> bool:
        """
        Mark an article as seen up to ``version`` (and ``journal_ref``).

        ``last_seen_version`` never decreases and never passes the stored
        maximum version. A journal reference of None leaves the
        acknowledged reference unchanged.
        """
        return self._update(
            f"acknowledging {article_id}",
            """
            UPDATE article SET
                last_seen_version = MAX(last_seen_version, MIN(?, max_version)),
                seen_journal_ref = COALESCE(?, seen_journal_ref)
            WHERE id = ?
            """,
            (int(version), journal_ref, article_id),
        )

    def dump_json(self, json_path: Path) -> int:
        """
        Write all records and cursors to a JSON file.

        Args:
            json_path: Output file (written to a temporary file, then renamed)

        Returns:
            Number of records written
        """
        json_path = Path(json_path)
        records = [record.to_dict() for record in self.iter_records()]
        data = {
            "articles": records,
            "cursors": {c.category: c.watermark for c in self.cursors()},
        }
        json_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = json_path.with_name(json_path.name + "~")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(json_path)

        logger.info(f"Saved {len(records)} articles to {json_path}")
        return len(records)

    def load_json(self, json_path: Path) -> int:
        """
        Merge records and cursors from a JSON dump.

        Stored versions are kept as they are and only higher versions from the
        dump are appended. Cursors are only restored for categories that have
        none yet. The whole load is one batch.

        Returns:
            Number of records merged
        """
        json_path = Path(json_path)
        with open(json_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        with _storage_errors(f"parsing {json_path.name}"):
            loaded = [ArticleRecord.from_dict(item) for item in data.get("articles", [])]
            cursors = dict(data.get("cursors") or {})

        with self.batch() as batch:
            for record in loaded:
                existing = batch.get(record.id)
                if existing is not None:
                    record = _merge_loaded(existing, record)
                batch.put(record, user_state=True)
            for category, watermark in cursors.items():
                if batch.get_cursor(category) is None:
                    batch.set_cursor(category, watermark)

        logger.info(f"Loaded {len(loaded)} articles from {json_path}")
        return len(loaded)


def _merge_loaded(existing: ArticleRecord, loaded: ArticleRecord) -> ArticleRecord:
    """Combine a stored record with one read from a dump without losing history."""
    extra = [v for v in loaded.versions if v.number > existing.max_version]
    versions = list(existing.versions) + extra
    journal_ref = existing.journal_ref or loaded.journal_ref
    if extra and loaded.journal_ref:
        journal_ref = loaded.journal_ref
    return ArticleRecord(
        id=existing.id,
        versions=versions,
        journal_ref=journal_ref,
        doi=existing.doi or loaded.doi,
        comments=loaded.comments if extra else existing.comments,
        acm_classes=existing.acm_classes or loaded.acm_classes,
        msc_classes=existing.msc_classes or loaded.msc_classes,
        last_change=max(filter(None, [existing.last_change, loaded.last_change]), default=None),
        bookmarked=existing.bookmarked or loaded.bookmarked,
        note=existing.note or loaded.note,
        last_seen_version=min(
            max(existing.last_seen_version, loaded.last_seen_version), versions[-1].number
        ),
        seen_journal_ref=existing.seen_journal_ref or loaded.seen_journal_ref,
    )
