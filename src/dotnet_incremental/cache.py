# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Persistent content-addressed result cache.

Keys are ``<content hash>:<args hash>:<project path>`` strings (see
hashing.make_cache_key); values are CacheEntry records. A hit for a key says
nothing about any other key, including the project's dependencies.

Storage is a single SQLite file opened once per run. One connection is
shared by all worker threads and every statement runs under _lock, so
concurrent reads and writes are serialized. Two processes using the same
file at once is not supported.

Failure policy: any error opening, reading or writing the store raises
CacheStoreError. The engine treats that as fatal rather than degrading to
"always miss", which would hide a broken store behind slow runs.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Tuple

from dotnet_incremental.hashing import parse_cache_key
from dotnet_incremental.models import CacheEntry, CacheStats, FailedEntry

logger = logging.getLogger(__name__)


class CacheStoreError(Exception):
    """Raised when the cache store cannot be opened, read or written."""

    pass


class ContentCache:
    """SQLite-backed cache of job outcomes.

    Thread Safety:
        All public methods are thread-safe via _lock.

    Usage:
        cache = ContentCache(Path(".donotnet/cache.db"))
        cache.mark(key, time.time(), True, b"output", "test --no-build")
        entry = cache.lookup(key)
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS entries (
        key TEXT PRIMARY KEY,
        content_hash TEXT NOT NULL,
        args_hash TEXT NOT NULL,
        project_path TEXT NOT NULL,
        success INTEGER NOT NULL,
        output BLOB NOT NULL,
        args_display TEXT NOT NULL DEFAULT '',
        last_run REAL NOT NULL,
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_entries_args ON entries(args_hash, project_path);
    """

    def __init__(self, db_path: Path) -> None:
        """Open (creating if needed) the store at ``db_path``.

        Raises:
            CacheStoreError: If the store cannot be opened or initialized.
        """
        self.db_path = Path(db_path)
        self._lock = Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(self.SCHEMA)
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise CacheStoreError(f"Cannot open cache store {self.db_path}: {e}") from e

        logger.debug(f"Opened cache store at {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "ContentCache":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access; commit on success, roll back and wrap errors otherwise."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                try:
                    self._conn.rollback()
                except sqlite3.Error:
                    logger.debug("Rollback failed after cache error", exc_info=True)
                raise CacheStoreError(f"Cache store error ({self.db_path}): {e}") from e

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            success=bool(row["success"]),
            output=bytes(row["output"]),
            last_run=row["last_run"],
            args_display=row["args_display"],
            created_at=row["created_at"],
        )

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if its recorded run succeeded, else None."""
        entry = self.lookup_any(key)
        if entry is None or not entry.success:
            return None
        return entry

    def lookup_any(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` regardless of outcome."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM entries WHERE key = ?", (key,)).fetchone()
        return self._entry_from_row(row) if row else None

    def mark(
        self,
        key: str,
        when: Optional[float],
        success: bool,
        output: Optional[bytes] = None,
        args_display: str = "",
    ) -> None:
        """Upsert the outcome for ``key``; the first write's creation time is kept.

        Args:
            key: Cache key.
            when: Unix timestamp of the run (defaults to now).
            success: Whether the job succeeded.
            output: Captured output (stored as empty bytes when None).
            args_display: Human-readable argument summary.
        """
        content_hash, args_hash, project_path = parse_cache_key(key)
        if not project_path:
            raise ValueError(f"Malformed cache key: {key!r}")
        when = time.time() if when is None else when

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO entries (
                    key, content_hash, args_hash, project_path,
                    success, output, args_display, last_run, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    success = excluded.success,
                    output = excluded.output,
                    args_display = excluded.args_display,
                    last_run = excluded.last_run
                """,
                (
                    key,
                    content_hash,
                    args_hash,
                    project_path,
                    1 if success else 0,
                    output or b"",
                    args_display,
                    when,
                    when,
                ),
            )

    def get_failed(self, args_hash: str) -> List[FailedEntry]:
        """Projects whose most recent entry under ``args_hash`` is a failure.

        Returns:
            Failed entries sorted by project path.
        """
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT project_path, success, output, last_run FROM entries "
                "WHERE args_hash = ? ORDER BY project_path, last_run",
                (args_hash,),
            ).fetchall()

        latest: Dict[str, sqlite3.Row] = {}
        for row in rows:
            # Rows arrive in last_run order per project; the last one wins
            latest[row["project_path"]] = row

        return [
            FailedEntry(project_path=path, output=bytes(row["output"]))
            for path, row in sorted(latest.items())
            if not row["success"]
        ]

    def stats(self) -> CacheStats:
        """Entry counts, time range and on-disk size."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, "
                "SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failed, "
                "MIN(last_run) AS oldest, MAX(last_run) AS newest FROM entries"
            ).fetchone()

        try:
            size = self.db_path.stat().st_size
        except OSError:
            size = 0

        return CacheStats(
            total_entries=row["total"] or 0,
            failed_entries=row["failed"] or 0,
            oldest_entry=row["oldest"],
            newest_entry=row["newest"],
            db_size_bytes=size,
        )

    def delete_old_entries(self, max_age_seconds: float, now: Optional[float] = None) -> int:
        """Delete entries whose last run is older than ``max_age_seconds``.

        Returns:
            Number of deleted entries.
        """
        cutoff = (time.time() if now is None else now) - max_age_seconds
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM entries WHERE last_run < ?", (cutoff,))
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Pruned {deleted} cache entries older than {max_age_seconds:.0f}s")
        return deleted

    def iter_entries(self) -> Iterator[Tuple[str, CacheEntry]]:
        """Iterate over a snapshot of all (key, entry) pairs in key order."""
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM entries ORDER BY key").fetchall()
        for row in rows:
            yield row["key"], self._entry_from_row(row)
