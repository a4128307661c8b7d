"""
SQLite key/value backend.
Single portable file, one row per key. Survives process restarts.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from .base import KeyValueBackend

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteBackend(KeyValueBackend):
    """Thread-safe SQLite key/value store (one connection per call)."""

    def __init__(self, db_path: str, max_bytes: int | None = None):
        super().__init__(max_bytes=max_bytes)
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite key/value store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self._check_quota(key, value)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, value),
            )
        logger.debug("Stored %d chars under %s", len(value), key)

    def remove(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [r[0] for r in rows]

    def usage(self) -> int:
        with self._connect() as conn:
            total = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv"
            ).fetchone()[0]
        return int(total)
