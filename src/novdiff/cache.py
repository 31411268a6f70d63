from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from threading import RLock
from typing import Any, TypeVar

from .errors import CacheDeleteError
from .models import DiffMarker, DiffResult, DiffResultKey

T = TypeVar("T")

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_COLUMNS = (
    "chapter_id, ai_version_id, fan_version_id, raw_version_id, algo_version, "
    "ai_hash, fan_hash, raw_hash, markers_json, analyzed_at, cost_usd, model"
)


class ResultCache:
    """Content-addressed store of diff results keyed by the 5-part version tuple."""

    def __init__(self, path: str | Path = MEMORY_PATH) -> None:
        self._in_memory = str(path) == MEMORY_PATH
        self.path = Path(path) if not self._in_memory else Path(MEMORY_PATH)
        if not self._in_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self.conn = self._connect_with_recovery()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _connect_sqlite(self) -> sqlite3.Connection:
        target = MEMORY_PATH if self._in_memory else str(self.path)
        conn = sqlite3.connect(target, check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return conn

    def _quarantine_corrupt_sqlite(self) -> None:
        if self._in_memory:
            return
        stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for suffix in ("", "-wal", "-shm"):
            src = Path(f"{self.path}{suffix}")
            if not src.exists():
                continue
            dst = Path(f"{src}.corrupt-{stamp}")
            try:
                src.replace(dst)
            except OSError:
                continue
            logger.warning("Quarantined corrupt diff cache file: %s -> %s", src, dst)

    def _connect_with_recovery(self) -> sqlite3.Connection:
        conn: sqlite3.Connection | None = None
        try:
            conn = self._connect_sqlite()
            self.conn = conn
            self._init_db()
            return conn
        except sqlite3.DatabaseError as exc:
            if conn is not None:
                conn.close()
            if not self._is_corruption_error(exc):
                raise
            self._quarantine_corrupt_sqlite()
            conn = self._connect_sqlite()
            self.conn = conn
            self._init_db()
            return conn

    @staticmethod
    def _is_corruption_error(exc: sqlite3.DatabaseError) -> bool:
        message = str(exc).lower()
        return any(
            marker in message
            for marker in (
                "database disk image is malformed",
                "file is not a database",
                "not a database",
                "malformed",
            )
        )

    def _recover_runtime_corruption(self) -> None:
        with suppress(sqlite3.Error):
            self.conn.close()
        self._quarantine_corrupt_sqlite()
        self.conn = self._connect_sqlite()
        self._init_db()

    def _run_with_recovery(self, operation: Callable[[], T]) -> T:
        with self._lock:
            try:
                return operation()
            except sqlite3.DatabaseError as exc:
                if not self._is_corruption_error(exc):
                    raise
                self._recover_runtime_corruption()
                return operation()

    def _init_db(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS diff_results (
              chapter_id TEXT NOT NULL,
              ai_version_id TEXT NOT NULL,
              fan_version_id TEXT NOT NULL,
              raw_version_id TEXT NOT NULL,
              algo_version TEXT NOT NULL,
              ai_hash TEXT,
              fan_hash TEXT,
              raw_hash TEXT,
              markers_json TEXT NOT NULL,
              analyzed_at INTEGER NOT NULL,
              cost_usd REAL NOT NULL,
              model TEXT NOT NULL,
              PRIMARY KEY (chapter_id, ai_version_id, fan_version_id, raw_version_id, algo_version)
            );
            """
        )
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_diff_results_chapter ON diff_results(chapter_id);")
        self.conn.commit()

    @staticmethod
    def _row_to_result(row: tuple[Any, ...]) -> DiffResult | None:
        try:
            raw_markers = json.loads(row[8]) if row[8] else []
            markers = [DiffMarker.from_dict(item) for item in raw_markers]
        except (TypeError, ValueError) as e:
            logger.warning("Skipping unreadable diff result for chapter %s: %s", row[0], e)
            return None
        raw_version_id = str(row[3])
        return DiffResult(
            chapter_id=str(row[0]),
            ai_version_id=str(row[1]),
            fan_version_id=(str(row[2]) if row[2] else None),
            raw_version_id=raw_version_id,
            algo_version=str(row[4]),
            ai_hash=row[5] or None,
            fan_hash=row[6] or None,
            # Legacy rows predate raw_hash; the raw version id was the raw hash.
            raw_hash=row[7] or raw_version_id,
            markers=markers,
            analyzed_at=int(row[9] or 0),
            cost_usd=float(row[10] or 0.0),
            model=str(row[11]),
        )

    def save(self, result: DiffResult) -> None:
        """Insert or wholesale-overwrite the result under its composite key."""
        markers_json = json.dumps([m.to_dict() for m in result.markers], ensure_ascii=False)
        key = result.key.storage_tuple()

        def _operation() -> None:
            self.conn.execute(
                f"""
                INSERT INTO diff_results({_COLUMNS})
                VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(chapter_id, ai_version_id, fan_version_id, raw_version_id, algo_version)
                DO UPDATE SET
                  ai_hash=excluded.ai_hash,
                  fan_hash=excluded.fan_hash,
                  raw_hash=excluded.raw_hash,
                  markers_json=excluded.markers_json,
                  analyzed_at=excluded.analyzed_at,
                  cost_usd=excluded.cost_usd,
                  model=excluded.model
                """,
                (
                    *key,
                    result.ai_hash,
                    result.fan_hash,
                    result.raw_hash or result.raw_version_id,
                    markers_json,
                    int(result.analyzed_at),
                    float(result.cost_usd),
                    result.model,
                ),
            )
            self.conn.commit()

        self._run_with_recovery(_operation)

    def get(self, key: DiffResultKey) -> DiffResult | None:
        def _operation() -> DiffResult | None:
            cur = self.conn.execute(
                f"""
                SELECT {_COLUMNS} FROM diff_results
                WHERE chapter_id=? AND ai_version_id=? AND fan_version_id=? AND raw_version_id=? AND algo_version=?
                """,
                key.storage_tuple(),
            )
            row = cur.fetchone()
            if not row:
                return None
            return self._row_to_result(row)

        return self._run_with_recovery(_operation)

    def get_by_chapter(self, chapter_id: str) -> list[DiffResult]:
        """All results for a chapter, newest analysis first."""

        def _operation() -> list[DiffResult]:
            cur = self.conn.execute(
                f"SELECT {_COLUMNS} FROM diff_results WHERE chapter_id=? ORDER BY analyzed_at DESC, rowid DESC",
                (chapter_id,),
            )
            results = [self._row_to_result(row) for row in cur.fetchall()]
            return [result for result in results if result is not None]

        return self._run_with_recovery(_operation)

    def all_results(self) -> list[DiffResult]:
        def _operation() -> list[DiffResult]:
            cur = self.conn.execute(f"SELECT {_COLUMNS} FROM diff_results ORDER BY analyzed_at DESC, rowid DESC")
            results = [self._row_to_result(row) for row in cur.fetchall()]
            return [result for result in results if result is not None]

        return self._run_with_recovery(_operation)

    def delete(self, key: DiffResultKey) -> bool:
        def _operation() -> bool:
            cur = self.conn.execute(
                """
                DELETE FROM diff_results
                WHERE chapter_id=? AND ai_version_id=? AND fan_version_id=? AND raw_version_id=? AND algo_version=?
                """,
                key.storage_tuple(),
            )
            self.conn.commit()
            return cur.rowcount > 0

        return self._run_with_recovery(_operation)

    def delete_by_chapter(self, chapter_id: str) -> int:
        """Delete every result of a chapter.

        Raises CacheDeleteError naming the keys that could not be removed.
        """

        def _operation() -> tuple[int, list[DiffResultKey]]:
            cur = self.conn.execute(
                "SELECT chapter_id, ai_version_id, fan_version_id, raw_version_id, algo_version "
                "FROM diff_results WHERE chapter_id=?",
                (chapter_id,),
            )
            keys = [
                DiffResultKey(
                    chapter_id=str(row[0]),
                    ai_version_id=str(row[1]),
                    fan_version_id=(str(row[2]) if row[2] else None),
                    raw_version_id=str(row[3]),
                    algo_version=str(row[4]),
                )
                for row in cur.fetchall()
            ]
            deleted = 0
            failed: list[DiffResultKey] = []
            for key in keys:
                try:
                    self.conn.execute(
                        """
                        DELETE FROM diff_results
                        WHERE chapter_id=? AND ai_version_id=? AND fan_version_id=?
                          AND raw_version_id=? AND algo_version=?
                        """,
                        key.storage_tuple(),
                    )
                    deleted += 1
                except sqlite3.DatabaseError as exc:
                    if self._is_corruption_error(exc):
                        raise
                    logger.warning("Failed to delete diff result %s: %s", key, exc)
                    failed.append(key)
            self.conn.commit()
            return deleted, failed

        deleted, failed = self._run_with_recovery(_operation)
        if failed:
            raise CacheDeleteError(chapter_id, failed, deleted)
        return deleted

    def find_by_hashes(
        self,
        chapter_id: str,
        ai_hash: str | None,
        fan_hash: str | None,
        raw_hash: str,
        algo_version: str,
    ) -> DiffResult | None:
        """Find a result for identical content even if version ids changed.

        Rows without a stored ai hash never match.
        """
        for candidate in self.get_by_chapter(chapter_id):
            if candidate.algo_version != algo_version:
                continue
            if (candidate.raw_hash or candidate.raw_version_id) != raw_hash:
                continue
            if not candidate.ai_hash or candidate.ai_hash != ai_hash:
                continue
            if (candidate.fan_hash or None) != (fan_hash or None):
                continue
            return candidate
        return None
