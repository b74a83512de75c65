"""Key/value persistence backing the pending queue and the offline cache."""
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

from pos_errors import StorageError


def iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


class SqliteKVStorage:
    """Single-table SQLite store. Each set/remove is its own transaction."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        try:
            self._conn = connect(db_path)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_utc TEXT NOT NULL
                )
            """)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {db_path}: {exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        try:
            with self._lock:
                row = self._conn.execute("SELECT value FROM kv_store WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"read {key} failed: {exc}") from exc
        if row is None:
            return None
        value = row['value']
        return value.encode('utf-8') if isinstance(value, str) else bytes(value)

    def set(self, key: str, value: bytes) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("""
                    INSERT INTO kv_store (key, value, updated_utc) VALUES (?,?,?)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
                """, (key, sqlite3.Binary(value), iso_now()))
        except sqlite3.Error as exc:
            raise StorageError(f"write {key} failed: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute("DELETE FROM kv_store WHERE key=?", (key,))
        except sqlite3.Error as exc:
            raise StorageError(f"remove {key} failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class MemoryKVStorage:
    """Ephemeral store used by tests and as the session fallback."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
