# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Origin document cache with HTTP conditional revalidation.

Entries are keyed by canonical URL (query excluded) and carry the origin's
validators (ETag / Last-Modified). Every request revalidates:

- fresh entry with validators → conditional GET; 304 serves the cached body
  without touching the cache (the TTL clock keeps running from the
  original fetch, bounding total staleness)
- fresh entry without validators → served for the TTL window without a
  network round trip (time-bounded only, flagged as such)
- no fresh entry → plain GET
- origin unreachable / timeout / 5xx → stale fallback if any entry exists
  (even expired), else ``OriginUnavailableError``
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from .errors import OriginUnavailableError
from .store import DOCUMENT_NAMESPACE, CacheStoreProtocol
from .urls import canonical_url

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "text/html; charset=utf-8"

# Inbound headers worth forwarding to the origin on a document fetch
FORWARDED_REQUEST_HEADERS = ("user-agent", "accept", "accept-language", "referer")


def forwardable_headers(headers: Mapping[str, str] | Iterable[tuple[str, str]]) -> dict[str, str]:
    """Pick the inbound headers that are forwarded to the origin."""
    items = headers.items() if isinstance(headers, Mapping) else headers
    picked: dict[str, str] = {}
    for name, value in items:
        lowered = name.lower()
        if lowered in FORWARDED_REQUEST_HEADERS and lowered not in picked:
            picked[lowered] = value
    return picked


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class CacheStatus(StrEnum):
    """Diagnostic ``X-HTML-Cache`` values."""

    HIT = "HIT"  # fresh entry without validators, no origin round trip
    MISS = "MISS"  # body came from the origin
    HIT_CONDITIONAL = "HIT-CONDITIONAL"  # origin answered 304
    HIT_FALLBACK = "HIT-FALLBACK"  # origin failed, cached copy served


@dataclass(frozen=True, slots=True)
class Validators:
    """HTTP cache-consistency tokens from the origin response."""

    etag: str | None = None
    last_modified: str | None = None

    @property
    def present(self) -> bool:
        return bool(self.etag or self.last_modified)

    def conditional_headers(self) -> dict[str, str]:
        """If-None-Match is preferred; If-Modified-Since only without an ETag."""
        if self.etag:
            return {"if-none-match": self.etag}
        if self.last_modified:
            return {"if-modified-since": self.last_modified}
        return {}

    def to_dict(self) -> dict[str, str | None]:
        return {"etag": self.etag, "last_modified": self.last_modified}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Validators:
        if not data:
            return cls()
        return cls(etag=data.get("etag") or None, last_modified=data.get("last_modified") or None)

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> Validators:
        return cls(etag=headers.get("etag") or None, last_modified=headers.get("last-modified") or None)


@dataclass(frozen=True, slots=True)
class DocumentCacheEntry:
    """A cached origin document."""

    url: str  # canonical URL
    body: str
    validators: Validators
    fetched_at: float  # wall clock, seconds
    content_type: str = DEFAULT_CONTENT_TYPE

    @property
    def validator_backed(self) -> bool:
        return self.validators.present

    def age(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)

    def is_fresh(self, ttl: float, now: float) -> bool:
        return self.age(now) <= ttl

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "body": self.body,
            "validators": self.validators.to_dict(),
            "fetched_at": self.fetched_at,
            "content_type": self.content_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DocumentCacheEntry:
        return cls(
            url=data["url"],
            body=data["body"],
            validators=Validators.from_dict(data.get("validators")),
            fetched_at=float(data["fetched_at"]),
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
        )


@dataclass(slots=True)
class RevalidationResult:
    """Outcome of ``DocumentCache.fetch_with_revalidation``."""

    url: str
    status: int
    headers: list[tuple[str, str]]
    content: bytes
    validators: Validators
    served_from_cache: bool
    fetched_at: float
    content_type: str = ""
    not_modified: bool = False
    degraded: bool = False
    _body: str | None = field(default=None, repr=False)

    @property
    def body(self) -> str:
        if self._body is None:
            self._body = self.content.decode("utf-8", errors="replace")
        return self._body

    @property
    def cache_status(self) -> CacheStatus:
        if self.degraded:
            return CacheStatus.HIT_FALLBACK
        if self.not_modified:
            return CacheStatus.HIT_CONDITIONAL
        if self.served_from_cache:
            return CacheStatus.HIT
        return CacheStatus.MISS

    @property
    def cacheable(self) -> bool:
        """A fresh 200 from the origin — the only result that may be ``put``."""
        return self.status == 200 and not self.served_from_cache

    @classmethod
    def from_entry(
        cls,
        entry: DocumentCacheEntry,
        *,
        headers: list[tuple[str, str]] | None = None,
        not_modified: bool = False,
        degraded: bool = False,
    ) -> RevalidationResult:
        hdrs = list(headers or [])
        if not any(name.lower() == "content-type" for name, _ in hdrs):
            hdrs.append(("content-type", entry.content_type))
        return cls(
            url=entry.url,
            status=200,
            headers=hdrs,
            content=entry.body.encode("utf-8"),
            validators=entry.validators,
            served_from_cache=True,
            fetched_at=entry.fetched_at,
            content_type=entry.content_type,
            not_modified=not_modified,
            degraded=degraded,
            _body=entry.body,
        )


# ---------------------------------------------------------------------------
# DocumentCache
# ---------------------------------------------------------------------------

# Headers of a 304 that describe the stored representation, not the empty 304 body
_NOT_MODIFIED_DROP = frozenset({"content-length", "content-encoding", "transfer-encoding"})


class DocumentCache:
    """Validator-based cache of origin HTML documents.

    Store failures are logged and treated as miss / no-op; they never fail
    a request.
    """

    def __init__(
        self,
        store: CacheStoreProtocol,
        client: httpx.AsyncClient,
        *,
        ttl: float = 86_400.0,
        retention: float = 604_800.0,
        origin_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._client = client
        self._ttl = ttl
        self._retention = max(retention, ttl)
        self._origin_timeout = origin_timeout
        self._clock = clock

    @property
    def ttl(self) -> float:
        return self._ttl

    # -- Read side --

    async def _load(self, url: str) -> DocumentCacheEntry | None:
        key = canonical_url(url)
        try:
            data = await self._store.get(DOCUMENT_NAMESPACE, key)
        except Exception as e:
            logger.warning("Document cache read failed for %s: %s", key, e)
            logger.debug("Document cache read failure detail", exc_info=True)
            return None
        if data is None:
            return None
        try:
            return DocumentCacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding malformed document cache entry for %s", key)
            return None

    async def get(self, url: str) -> DocumentCacheEntry | None:
        """Return the entry for *url* only while ``now - fetched_at <= ttl``."""
        entry = await self._load(url)
        if entry is None:
            logger.debug("Document cache miss: %s", url)
            return None
        now = self._clock()
        if not entry.is_fresh(self._ttl, now):
            logger.debug("Document cache expired: %s (age=%.0fs)", url, entry.age(now))
            return None
        logger.debug(
            "Document cache entry: %s age=%.0fs etag=%s last_modified=%s",
            url,
            entry.age(now),
            entry.validators.etag or "none",
            entry.validators.last_modified or "none",
        )
        return entry

    async def peek(self, url: str) -> DocumentCacheEntry | None:
        """Return the entry regardless of TTL — stale-fallback candidates only."""
        return await self._load(url)

    # -- Write side --

    async def put(
        self,
        url: str,
        body: str,
        validators: Validators,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> bool:
        """Unconditionally overwrite the entry for *url*. Never raises."""
        entry = DocumentCacheEntry(
            url=canonical_url(url),
            body=body,
            validators=validators,
            fetched_at=self._clock(),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
        )
        try:
            await self._store.put(DOCUMENT_NAMESPACE, entry.url, entry.to_dict(), self._retention)
        except Exception as e:
            logger.warning("Document cache write failed for %s: %s", entry.url, e)
            logger.debug("Document cache write failure detail", exc_info=True)
            return False
        if not validators.present:
            logger.info("Cached %s without validators (time-bounded only, %d bytes)", entry.url, len(body))
        else:
            logger.info("Cached %s (%d bytes, ttl=%.0fs)", entry.url, len(body), self._ttl)
        return True

    # -- Origin fetch --

    async def fetch_with_revalidation(
        self,
        url: str,
        cached: DocumentCacheEntry | None,
        *,
        stale: DocumentCacheEntry | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> RevalidationResult:
        """Fetch *url*, conditionally when *cached* carries validators.

        *stale* is an expired entry used only as a fallback; its validators
        are never sent, so a 304 can never resurrect expired content.

        Raises:
            OriginUnavailableError: origin failed and neither *cached* nor *stale* exists.
        """
        fallback = cached or stale

        if cached is not None and not cached.validators.present:
            logger.debug("Serving %s from time-bounded cache (no validators)", url)
            return RevalidationResult.from_entry(cached)

        request_headers = dict(headers or {})
        conditional = cached.validators.conditional_headers() if cached is not None else {}
        request_headers.update(conditional)
        logger.debug(
            "Fetching %s %s",
            url,
            "with conditional headers" if conditional else "without conditional headers",
        )

        started = time.monotonic()
        try:
            response = await self._client.get(
                url,
                headers=request_headers,
                timeout=self._origin_timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            return self._fallback_or_raise(url, fallback, f"origin timed out: {e!r}", timed_out=True)
        except httpx.HTTPError as e:
            return self._fallback_or_raise(url, fallback, f"origin unreachable: {e!r}")
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("Origin fetch %s -> %d (%.0fms)", url, response.status_code, elapsed_ms)

        if response.status_code == 304:
            if cached is None:
                return self._fallback_or_raise(url, fallback, "origin returned 304 without a cached entry", status=304)
            logger.info("Content not modified for %s — using cache", url)
            passthrough = [
                (name, value) for name, value in response.headers.multi_items() if name not in _NOT_MODIFIED_DROP
            ]
            return RevalidationResult.from_entry(cached, headers=passthrough, not_modified=True)

        if response.status_code >= 500:
            return self._fallback_or_raise(
                url, fallback, f"origin server error {response.status_code}", status=response.status_code
            )

        return RevalidationResult(
            url=url,
            status=response.status_code,
            headers=list(response.headers.multi_items()),
            content=response.content,
            validators=Validators.from_headers(response.headers),
            served_from_cache=False,
            fetched_at=self._clock(),
            content_type=response.headers.get("content-type", ""),
            _body=response.text,
        )

    def _fallback_or_raise(
        self,
        url: str,
        fallback: DocumentCacheEntry | None,
        reason: str,
        *,
        status: int | None = None,
        timed_out: bool = False,
    ) -> RevalidationResult:
        if fallback is None:
            logger.warning("Origin failure for %s with no cached fallback: %s", url, reason)
            raise OriginUnavailableError(reason, url=url, status=status, timed_out=timed_out)
        logger.warning(
            "Origin failure for %s, serving cached fallback (age=%.0fs): %s",
            url,
            fallback.age(self._clock()),
            reason,
        )
        return RevalidationResult.from_entry(fallback, degraded=True)
