"""
Key-value persistence for session and sweep state.

Policy code only talks to the KeyValueStore protocol, so the in-memory store
used in development can be swapped for the SQLite store (or anything else
offering compare-and-swap) without touching session or sweep logic.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .storage import ensure_private_dir, ensure_private_file, harden_sqlite_files


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def put_if_absent(self, key: str, value: str) -> bool: ...

    def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool: ...

    def delete(self, key: str, expected: Optional[str] = None) -> bool: ...

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]: ...

    def close(self) -> None: ...


class MemoryStore:
    """Dict-backed store. The lock only guards the dict itself."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def put_if_absent(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = value
            return True

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        with self._lock:
            if key not in self._data:
                return False
            if expected is not None and self._data[key] != expected:
                return False
            del self._data[key]
            return True

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        with self._lock:
            items = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        items.sort()
        return iter(items)

    def close(self) -> None:
        pass


class SqliteStore:
    """
    SQLite-backed store.

    Every conditional write runs inside BEGIN IMMEDIATE, so compare-and-swap
    is atomic across threads and processes sharing the database file.
    """

    def __init__(self, path: Path):
        self.path = path
        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._init_db()
        harden_sqlite_files(self.path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def get(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def put_if_absent(self, key: str, value: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("INSERT OR IGNORE INTO kv (key, value) VALUES (?, ?)", (key, value))
            return cur.rowcount == 1

    def compare_and_swap(self, key: str, expected: Optional[str], value: str) -> bool:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
                current = row["value"] if row else None
                if current != expected:
                    conn.execute("ROLLBACK")
                    return False
                if row is None:
                    conn.execute("INSERT INTO kv (key, value) VALUES (?, ?)", (key, value))
                else:
                    conn.execute("UPDATE kv SET value = ? WHERE key = ?", (value, key))
                conn.execute("COMMIT")
                return True
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def delete(self, key: str, expected: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if expected is None:
                cur = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            else:
                cur = conn.execute("DELETE FROM kv WHERE key = ? AND value = ?", (key, expected))
            return cur.rowcount == 1

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            ).fetchall()
        return iter([(row["key"], row["value"]) for row in rows])

    def close(self) -> None:
        # Connections are per call; checkpoint the WAL so the file is self-contained.
        with self._connect() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
