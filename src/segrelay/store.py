# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Cache store abstraction — namespaced key/value with per-namespace retention.

Defines ``CacheStoreProtocol`` plus two backends:

- ``InMemoryStore``: OrderedDict LRU per namespace, retention checked lazily.
- ``SqliteStore``: aiosqlite, single long-lived connection, WAL journal.

Values are JSON-serializable dicts. Both backends are last-writer-wins and
never delete on the hot path; expired rows are simply ignored on read.
Retention is a storage bound only — freshness (TTL) is decided by the
caches on top, which is what lets an expired document still serve as a
stale fallback.
"""

from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiosqlite

from .errors import CacheBackendError

logger = logging.getLogger(__name__)

DOCUMENT_NAMESPACE = "document"
SEGMENT_NAMESPACE = "segments"

_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheStoreProtocol(Protocol):
    """Interface for cache persistence — in-memory or SQLite."""

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None: ...

    async def put(self, namespace: str, key: str, value: dict[str, Any], retention: float) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Process-local store. Suitable for a single worker and for tests.

    Each namespace is an independent LRU bounded by ``max_entries``.
    """

    def __init__(self, *, max_entries: int = 10_000, clock: Callable[[], float] = time.time) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._namespaces: dict[str, OrderedDict[str, tuple[float, str]]] = {}
        self.evictions = 0

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        bucket = self._namespaces.get(namespace)
        if bucket is None:
            return None
        item = bucket.get(key)
        if item is None:
            return None
        expires_at, payload = item
        if self._clock() > expires_at:
            return None
        bucket.move_to_end(key)
        return json.loads(payload)

    async def put(self, namespace: str, key: str, value: dict[str, Any], retention: float) -> None:
        bucket = self._namespaces.setdefault(namespace, OrderedDict())
        # Serialize on write so callers cannot mutate stored entries
        bucket[key] = (self._clock() + retention, json.dumps(value))
        bucket.move_to_end(key)
        while len(bucket) > self._max_entries:
            evicted_key, _ = bucket.popitem(last=False)
            self.evictions += 1
            logger.debug("Store eviction: %s/%s", namespace, evicted_key)

    async def close(self) -> None:
        """No-op for the in-memory store."""

    def size(self, namespace: str) -> int:
        return len(self._namespaces.get(namespace, ()))


# ---------------------------------------------------------------------------
# SQLite implementation
# ---------------------------------------------------------------------------

_CREATE_CACHE_ENTRIES = """
CREATE TABLE IF NOT EXISTS cache_entries (
    namespace  TEXT NOT NULL,
    key        TEXT NOT NULL,
    value      TEXT NOT NULL,
    stored_at  REAL NOT NULL,
    expires_at REAL NOT NULL,
    PRIMARY KEY (namespace, key)
)
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at ON cache_entries(expires_at)",
]


class SqliteStore:
    """SQLite-backed store implementing ``CacheStoreProtocol``.

    Use the ``create()`` async classmethod factory — never instantiate directly.
    Backend errors are re-raised as ``CacheBackendError``.
    """

    def __init__(self, db: aiosqlite.Connection, *, clock: Callable[[], float] = time.time) -> None:
        self._db = db
        self._clock = clock

    @classmethod
    async def create(cls, db_path: str | Path, *, clock: Callable[[], float] = time.time) -> SqliteStore:
        """Open (or create) the database and initialise the schema."""
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(db_path))
        try:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            async with db.execute("PRAGMA user_version") as cur:
                row = await cur.fetchone()
            version = row[0] if row else 0
            if version < _SCHEMA_VERSION:
                await db.execute(_CREATE_CACHE_ENTRIES)
                for ddl in _CREATE_INDEXES:
                    await db.execute(ddl)
                await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")
            await db.commit()
        except Exception:
            await db.close()
            raise
        logger.info("SQLite cache store: %s", db_path)
        return cls(db, clock=clock)

    async def get(self, namespace: str, key: str) -> dict[str, Any] | None:
        try:
            async with self._db.execute(
                "SELECT value FROM cache_entries WHERE namespace = ? AND key = ? AND expires_at >= ?",
                (namespace, key, self._clock()),
            ) as cur:
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            raise CacheBackendError(f"sqlite read failed: {e}") from e
        if row is None:
            return None
        return json.loads(row[0])

    async def put(self, namespace: str, key: str, value: dict[str, Any], retention: float) -> None:
        now = self._clock()
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO cache_entries (namespace, key, value, stored_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (namespace, key, json.dumps(value), now, now + retention),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            raise CacheBackendError(f"sqlite write failed: {e}") from e

    async def purge_expired(self) -> int:
        """Delete rows past retention. Maintenance only, never called per request."""
        cur = await self._db.execute("DELETE FROM cache_entries WHERE expires_at < ?", (self._clock(),))
        await self._db.commit()
        return cur.rowcount

    async def close(self) -> None:
        await self._db.close()


async def open_store(db_path: str = "", *, max_entries: int = 10_000) -> CacheStoreProtocol:
    """SQLite when *db_path* is set, otherwise an in-memory store."""
    if db_path:
        return await SqliteStore.create(db_path)
    logger.info("In-memory cache store (no db path)")
    return InMemoryStore(max_entries=max_entries)
