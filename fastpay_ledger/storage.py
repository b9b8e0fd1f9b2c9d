"""
Storage Backend Module

Provides the synchronous key-value interface the ledger persists through,
with an in-memory implementation (testing, guest sessions) and a SQLite
implementation (file-backed persistence). Values are JSON strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import threading

from .errors import PersistenceError


class KeyValueStore(ABC):
    """Abstract interface for key-value storage backends"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Get the value stored under ``key``, or None"""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``"""
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key`` if present"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every key"""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> Iterator[str]:
        """Iterate keys starting with ``prefix``"""
        pass

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory storage implementation for testing and guest sessions"""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        # One snapshot per open atomic block, innermost last
        self._snapshots: List[Dict[str, str]] = []

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("Values must be strings")
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def keys(self, prefix: str = "") -> Iterator[str]:
        with self._lock:
            matching = [key for key in self._data if key.startswith(prefix)]
        return iter(sorted(matching))

    def begin_transaction(self) -> None:
        # Holding the lock for the whole transaction keeps other threads
        # from observing half-applied writes.
        self._lock.acquire()
        self._snapshots.append(dict(self._data))

    def commit(self) -> None:
        if not self._snapshots:
            return
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        if not self._snapshots:
            return
        self._data = self._snapshots.pop()
        self._lock.release()

    def get_all_data(self) -> Dict[str, str]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return dict(self._data)


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        try:
            # isolation_level=None: transactions are managed explicitly below
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open ledger store at {self.db_path}: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise PersistenceError("Ledger store is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(f"Ledger store error: {e}") from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("Values must be strings")
        with self._lock:
            now = datetime.now(timezone.utc).isoformat()
            self._execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (key, value, now))

    def remove(self, key: str) -> None:
        with self._lock:
            self._execute("DELETE FROM kv_store WHERE key = ?", (key,))

    def clear(self) -> None:
        with self._lock:
            self._execute("DELETE FROM kv_store")

    def keys(self, prefix: str = "") -> Iterator[str]:
        with self._lock:
            rows = self._execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix)
            ).fetchall()
        return iter([row[0] for row in rows])

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._execute("BEGIN IMMEDIATE")
            else:
                self._execute(f"SAVEPOINT nested_{self._depth}")
        except PersistenceError:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._execute("COMMIT")
            else:
                self._execute(f"RELEASE SAVEPOINT nested_{self._depth}")
        except PersistenceError:
            # COMMIT failed: undo so the connection is usable again
            try:
                self._connection.execute("ROLLBACK")
            except sqlite3.Error:
                pass
            raise
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._execute("ROLLBACK")
            else:
                self._execute(f"ROLLBACK TO SAVEPOINT nested_{self._depth}")
                self._execute(f"RELEASE SAVEPOINT nested_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_key_value_store(backend: str = "memory", path: Union[str, Path] = "fastpay.db") -> KeyValueStore:
    """Factory function to create the configured key-value store"""
    backend = (backend or "memory").lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "sqlite":
        return SQLiteKeyValueStore(path)
    raise ValueError(f"Unknown storage backend: {backend}")
