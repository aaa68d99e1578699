# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Classification-result cache keyed by request fingerprint.

Independent of the document cache's keying. The write path refuses
"no signal" results (only an empty global slot): caching them would turn
a transient classifier outage into a persistent empty answer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from . import Segments, has_signal, normalize_segments
from .store import SEGMENT_NAMESPACE, CacheStoreProtocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SegmentCacheEntry:
    key: str
    segments: Segments
    cached_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.cached_at)


@dataclass(slots=True)
class SegmentCacheStats:
    """Counters for segment cache behaviour — logged, surfaced by /health."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    rejected_writes: int = 0
    ttl_expirations: int = 0
    backend_errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class SegmentCache:
    """TTL-gated segment cache over a ``CacheStoreProtocol`` namespace."""

    def __init__(
        self,
        store: CacheStoreProtocol,
        *,
        ttl: float = 3_600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._stats = SegmentCacheStats()

    @property
    def stats(self) -> SegmentCacheStats:
        return self._stats

    async def get_entry(self, key: str) -> SegmentCacheEntry | None:
        try:
            data = await self._store.get(SEGMENT_NAMESPACE, key)
        except Exception as e:
            self._stats.backend_errors += 1
            self._stats.misses += 1
            logger.warning("Segment cache read failed for %s: %s", key, e)
            return None
        if data is None:
            self._stats.misses += 1
            logger.debug("Segment cache miss: %s", key)
            return None
        try:
            entry = SegmentCacheEntry(
                key=key,
                segments=normalize_segments(data["segments"]),
                cached_at=float(data["cached_at"]),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            self._stats.misses += 1
            logger.warning("Discarding malformed segment cache entry for %s", key)
            return None
        now = self._clock()
        if entry.age(now) > self._ttl:
            self._stats.ttl_expirations += 1
            self._stats.misses += 1
            logger.debug("Segment cache expired: %s (age=%.0fs)", key, entry.age(now))
            return None
        self._stats.hits += 1
        logger.debug("Segment cache hit: %s", key)
        return entry

    async def get(self, key: str) -> Segments | None:
        entry = await self.get_entry(key)
        return entry.segments if entry is not None else None

    async def put(self, key: str, segments: Segments) -> bool:
        """Store *segments* under *key*; refuses results without any label.

        Returns True when the entry was written. Never raises.
        """
        if not has_signal(segments):
            self._stats.rejected_writes += 1
            logger.debug("Segment cache write rejected (no signal): %s", key)
            return False
        payload = {"segments": normalize_segments(segments), "cached_at": self._clock()}
        try:
            # Retention equals TTL: expired segments are never useful as fallback
            await self._store.put(SEGMENT_NAMESPACE, key, payload, self._ttl)
        except Exception as e:
            self._stats.backend_errors += 1
            logger.warning("Segment cache write failed for %s: %s", key, e)
            return False
        self._stats.writes += 1
        logger.info("Cached segments for %s (slots=%d, ttl=%.0fs)", key, len(payload["segments"]), self._ttl)
        return True
