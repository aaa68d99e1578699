# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for segrelay.document_cache — TTL reads, writes, conditional revalidation, fallback."""

from __future__ import annotations

import httpx
import pytest

from segrelay.document_cache import (
    CacheStatus,
    DocumentCache,
    DocumentCacheEntry,
    Validators,
    forwardable_headers,
)
from segrelay.errors import CacheBackendError, OriginUnavailableError

from tests._helpers import PAGE_HTML

URL = "https://example.com/article"


@pytest.fixture
def cache(store, http_client, clock) -> DocumentCache:
    return DocumentCache(store, http_client, ttl=3600, retention=86400, origin_timeout=5, clock=clock)


class BrokenStore:
    async def get(self, namespace, key):
        raise CacheBackendError("read failed")

    async def put(self, namespace, key, value, retention):
        raise CacheBackendError("write failed")

    async def close(self):
        pass


# =========================================================================
# Validators
# =========================================================================


class TestValidators:
    def test_prefers_if_none_match(self):
        v = Validators(etag='"abc"', last_modified="Wed, 21 Oct 2015 07:28:00 GMT")
        assert v.conditional_headers() == {"if-none-match": '"abc"'}

    def test_if_modified_since_without_etag(self):
        v = Validators(last_modified="Wed, 21 Oct 2015 07:28:00 GMT")
        assert v.conditional_headers() == {"if-modified-since": "Wed, 21 Oct 2015 07:28:00 GMT"}

    def test_none(self):
        assert Validators().conditional_headers() == {}
        assert not Validators().present

    def test_from_headers_ignores_empty_values(self):
        v = Validators.from_headers(httpx.Headers({"etag": "", "last-modified": "x"}))
        assert v.etag is None
        assert v.last_modified == "x"

    def test_dict_round_trip(self):
        v = Validators(etag='"e"')
        assert Validators.from_dict(v.to_dict()) == v


class TestForwardableHeaders:
    def test_picks_only_forwarded_headers(self):
        picked = forwardable_headers(
            {"User-Agent": "UA", "Accept": "text/html", "Cookie": "a=b", "Referer": "https://r/", "Host": "x"}
        )
        assert picked == {"user-agent": "UA", "accept": "text/html", "referer": "https://r/"}


# =========================================================================
# get / peek / put
# =========================================================================


class TestReadWrite:
    async def test_get_miss(self, cache):
        assert await cache.get(URL) is None

    async def test_put_then_get(self, cache):
        assert await cache.put(URL, PAGE_HTML, Validators(etag='"v1"'))
        entry = await cache.get(URL)
        assert entry is not None
        assert entry.body == PAGE_HTML
        assert entry.validators.etag == '"v1"'
        assert entry.validator_backed

    async def test_key_excludes_query(self, cache):
        await cache.put(URL + "?utm_source=x", PAGE_HTML, Validators())
        assert await cache.get(URL + "?page=2") is not None

    async def test_ttl_gate(self, cache, clock):
        await cache.put(URL, PAGE_HTML, Validators())
        clock.advance(3600)
        assert await cache.get(URL) is not None
        clock.advance(1)
        assert await cache.get(URL) is None

    async def test_peek_ignores_ttl(self, cache, clock):
        await cache.put(URL, PAGE_HTML, Validators())
        clock.advance(7200)
        assert await cache.get(URL) is None
        stale = await cache.peek(URL)
        assert stale is not None
        assert stale.body == PAGE_HTML

    async def test_put_overwrites(self, cache):
        await cache.put(URL, "old", Validators(etag='"1"'))
        await cache.put(URL, "new", Validators(etag='"2"'))
        entry = await cache.get(URL)
        assert entry.body == "new"
        assert entry.validators.etag == '"2"'

    async def test_backend_failure_is_miss_and_noop(self, http_client, clock):
        cache = DocumentCache(BrokenStore(), http_client, clock=clock)
        assert await cache.get(URL) is None
        assert await cache.put(URL, PAGE_HTML, Validators()) is False

    async def test_malformed_entry_discarded(self, cache, store):
        await store.put("document", "https://example.com/article", {"unexpected": True}, 60)
        assert await cache.get(URL) is None


# =========================================================================
# fetch_with_revalidation
# =========================================================================


class TestFetchWithRevalidation:
    async def test_plain_fetch_without_cache(self, cache, origin):
        result = await cache.fetch_with_revalidation(URL, None)
        assert result.status == 200
        assert result.body == PAGE_HTML
        assert not result.served_from_cache
        assert result.cache_status is CacheStatus.MISS
        assert result.cacheable
        assert result.validators.etag == '"v1"'
        sent = origin.requests[0].headers
        assert "if-none-match" not in sent
        assert "if-modified-since" not in sent

    async def test_forwards_inbound_headers(self, cache, origin):
        await cache.fetch_with_revalidation(URL, None, headers={"user-agent": "TestUA", "accept-language": "de"})
        sent = origin.requests[0].headers
        assert sent["user-agent"] == "TestUA"
        assert sent["accept-language"] == "de"

    async def test_304_serves_cached_body(self, cache, origin, clock):
        await cache.put(URL, "<html>cached</html>", Validators(etag='"v1"'))
        fetched_at = (await cache.get(URL)).fetched_at
        clock.advance(100)

        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))

        assert origin.requests[0].headers["if-none-match"] == '"v1"'
        assert result.served_from_cache
        assert result.not_modified
        assert result.cache_status is CacheStatus.HIT_CONDITIONAL
        assert result.body == "<html>cached</html>"
        assert not result.cacheable
        # The 304 does not reset the TTL clock
        assert (await cache.get(URL)).fetched_at == fetched_at

    async def test_304_drops_length_and_encoding_headers(self, cache, origin):
        origin.responder = lambda request: httpx.Response(
            304, headers={"etag": '"v1"', "content-length": "0", "cache-control": "max-age=60"}
        )
        await cache.put(URL, PAGE_HTML, Validators(etag='"v1"'))
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        names = {name for name, _ in result.headers}
        assert "content-length" not in names
        assert "cache-control" in names

    async def test_etag_preferred_over_last_modified(self, cache, origin):
        v = Validators(etag='"v1"', last_modified="Wed, 21 Oct 2015 07:28:00 GMT")
        await cache.put(URL, PAGE_HTML, v)
        await cache.fetch_with_revalidation(URL, await cache.get(URL))
        sent = origin.requests[0].headers
        assert sent["if-none-match"] == '"v1"'
        assert "if-modified-since" not in sent

    async def test_last_modified_only(self, cache, origin):
        origin.etag = None
        lm = "Wed, 21 Oct 2015 07:28:00 GMT"
        await cache.put(URL, PAGE_HTML, Validators(last_modified=lm))
        await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert origin.requests[0].headers["if-modified-since"] == lm

    async def test_changed_document_returns_new_body(self, cache, origin):
        await cache.put(URL, "<html>old</html>", Validators(etag='"v0"'))
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert result.cache_status is CacheStatus.MISS
        assert result.body == PAGE_HTML
        assert result.validators.etag == '"v1"'
        assert result.cacheable

    async def test_entry_without_validators_served_without_network(self, cache, origin):
        await cache.put(URL, "<html>time-bounded</html>", Validators())
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert origin.requests == []
        assert result.cache_status is CacheStatus.HIT
        assert result.body == "<html>time-bounded</html>"

    async def test_expired_entry_validators_not_sent(self, cache, origin, clock):
        await cache.put(URL, "<html>old</html>", Validators(etag='"v1"'))
        clock.advance(7200)
        stale = await cache.peek(URL)
        result = await cache.fetch_with_revalidation(URL, None, stale=stale)
        assert "if-none-match" not in origin.requests[0].headers
        assert result.cache_status is CacheStatus.MISS

    async def test_network_error_falls_back_to_cached(self, cache, origin):
        await cache.put(URL, "<html>cached</html>", Validators(etag='"v1"'))
        origin.fail_with(httpx.ConnectError)
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert result.degraded
        assert result.cache_status is CacheStatus.HIT_FALLBACK
        assert result.body == "<html>cached</html>"

    async def test_server_error_falls_back_to_expired_entry(self, cache, origin, clock):
        await cache.put(URL, "<html>stale</html>", Validators(etag='"v1"'))
        clock.advance(10_000)
        origin.respond_status(503)
        result = await cache.fetch_with_revalidation(URL, None, stale=await cache.peek(URL))
        assert result.degraded
        assert result.body == "<html>stale</html>"

    async def test_timeout_falls_back(self, cache, origin):
        await cache.put(URL, "<html>cached</html>", Validators(etag='"v1"'))
        origin.fail_with(httpx.ReadTimeout)
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert result.cache_status is CacheStatus.HIT_FALLBACK

    async def test_failure_without_fallback_raises(self, cache, origin):
        origin.fail_with(httpx.ConnectError)
        with pytest.raises(OriginUnavailableError) as exc_info:
            await cache.fetch_with_revalidation(URL, None)
        assert exc_info.value.url == URL
        assert not exc_info.value.timed_out

    async def test_timeout_without_fallback_flags_timeout(self, cache, origin):
        origin.fail_with(httpx.ReadTimeout)
        with pytest.raises(OriginUnavailableError) as exc_info:
            await cache.fetch_with_revalidation(URL, None)
        assert exc_info.value.timed_out

    async def test_5xx_without_fallback_carries_status(self, cache, origin):
        origin.respond_status(502)
        with pytest.raises(OriginUnavailableError) as exc_info:
            await cache.fetch_with_revalidation(URL, None)
        assert exc_info.value.status == 502

    async def test_4xx_returned_as_is(self, cache, origin):
        await cache.put(URL, "<html>cached</html>", Validators(etag='"v0"'))
        origin.respond_status(404)
        result = await cache.fetch_with_revalidation(URL, await cache.get(URL))
        assert result.status == 404
        assert not result.degraded
        assert not result.cacheable

    async def test_unexpected_304_without_entry_is_failure(self, cache, origin):
        origin.responder = lambda request: httpx.Response(304)
        with pytest.raises(OriginUnavailableError) as exc_info:
            await cache.fetch_with_revalidation(URL, None)
        assert exc_info.value.status == 304


class TestDocumentCacheEntry:
    def test_dict_round_trip(self):
        entry = DocumentCacheEntry(
            url=URL, body="<p>x</p>", validators=Validators(etag='"1"'), fetched_at=10.0, content_type="text/html"
        )
        assert DocumentCacheEntry.from_dict(entry.to_dict()) == entry

    def test_freshness_boundary(self):
        entry = DocumentCacheEntry(url=URL, body="", validators=Validators(), fetched_at=100.0)
        assert entry.is_fresh(ttl=50, now=150.0)
        assert not entry.is_fresh(ttl=50, now=150.1)
