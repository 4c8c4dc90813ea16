import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS items (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,               -- raw string, usually JSON
  updated_at REAL NOT NULL
);
"""


@dataclass
class LocalStorage:
    """
    Persistent string key/value store, one SQLite file per studio.

    Values are opaque strings; callers own the (JSON) encoding. Writes replace
    the whole value, last write wins.
    """

    db_path: Path
    conn: sqlite3.Connection
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def open(cls, db_path: os.PathLike) -> "LocalStorage":
        path = Path(db_path)
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if str(path) != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")

        storage = cls(db_path=path, conn=conn)
        storage._ensure_schema()
        return storage

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _ensure_schema(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.execute("INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?)", ("schema_version", "1"))

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM items WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO items(key, value, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (key, str(value), time.time()),
            )

    def remove_item(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM items WHERE key=?", (key,))

    def keys(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute("SELECT key FROM items ORDER BY key ASC").fetchall()
        return [r["key"] for r in rows]
