"""
Block Cache

SQLite-backed key-value store holding the raw data fetched from each chain.
Keys are ``{chain}:{kind}:{height}`` strings and values are opaque bytes.

The connection is shared by the ingest worker threads and by concurrently
running changelog builds, so every statement runs under one lock.
"""

import logging
import os
import sqlite3
import threading
from typing import Iterator, List, Tuple

logger = logging.getLogger(__name__)


class CacheError(Exception):
    """Exception raised when the cache cannot be read or written."""
    pass


class KeyNotFoundError(CacheError, KeyError):
    """Raised by :meth:`BlockCache.get` for an absent key."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key}"


class BlockCache:
    """
    Persistent key-value cache.

    Usage:
        with BlockCache("database.db") as cache:
            cache.put("provider:block:1", data)
            cache.get("provider:block:1")
    """

    def __init__(self, db_path: str):
        """
        Open (or create) the cache.

        Args:
            db_path: Path to the SQLite file, or ":memory:" for a throwaway cache
        """
        self.db_path = db_path
        if db_path != ":memory:":
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self._lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            if db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
            """)
            self.conn.commit()
        except sqlite3.Error as e:
            raise CacheError(f"failed to open cache at {db_path}: {e}") from e

        logger.debug(f"Opened block cache at {db_path}")

    def has(self, key: str) -> bool:
        with self._lock:
            try:
                row = self.conn.execute("SELECT 1 FROM kv WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise CacheError(f"failed to check key {key}: {e}") from e
        return row is not None

    def get(self, key: str) -> bytes:
        """
        Return the value stored under ``key``.

        Raises:
            KeyNotFoundError: If the key is absent
            CacheError: If the read fails
        """
        with self._lock:
            try:
                row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise CacheError(f"failed to get key {key}: {e}") from e
        if row is None:
            raise KeyNotFoundError(key)
        return bytes(row[0])

    def put(self, key: str, value: bytes) -> None:
        # Rewriting a key with identical content is harmless.
        with self._lock:
            try:
                self.conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, sqlite3.Binary(value)),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise CacheError(f"failed to put key {key}: {e}") from e

    def scan_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        """
        Yield ``(key, value)`` pairs whose key starts with ``prefix``, in key order.

        Keys sort as strings, so heights come back in lexicographic order;
        callers needing numeric order sort by height themselves.
        """
        with self._lock:
            try:
                rows: List[Tuple[str, bytes]] = self.conn.execute(
                    "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                ).fetchall()
            except sqlite3.Error as e:
                raise CacheError(f"failed to scan prefix {prefix}: {e}") from e
        for key, value in rows:
            yield key, bytes(value)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __enter__(self) -> "BlockCache":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
