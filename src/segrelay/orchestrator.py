# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Fetch orchestrator — one relayed request, start to finish.

State machine::

    CheckDocCache → Revalidate → CheckSegCache → [Classify] → Rewrite → Respond
          ↘ ServeUpstreamUnmodified        ↘ ErrorPage

Side exits:

- resource-looking paths, non-GET methods and verified bots are relayed
  unmodified without touching either cache
- non-HTML or non-200 origin responses are relayed unmodified, uncached
- origin failure with nothing cached → RFC 9457 error page (502 / 504)

Cache writes never happen on the critical path: they are returned as
``RelayResponse.deferred`` and run after the body has been sent.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from urllib.parse import urlsplit

import httpx

from . import Segments, empty_segments, has_signal, normalize_segments
from .classifier import Classifier
from .config import RelayConfig, RelayMode
from .document_cache import CacheStatus, DocumentCache, RevalidationResult, forwardable_headers
from .errors import OriginUnavailableError
from .fingerprint import ClassificationRequest, ClientContext, build_key
from .pipeline_timer import PipelineTimer
from .problem_details import from_exception
from .rewrite import is_html_content_type, looks_like_html, rewrite_document
from .segment_cache import SegmentCache
from .urls import RewriteContext, canonical_url, is_resource_path, normalize_target_url

logger = logging.getLogger(__name__)

DeferredWrite = Callable[[], Awaitable[object]]

# Recomputed by the server for the body actually sent
_STRIPPED_RESPONSE_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}
)
# Never forwarded upstream on a passthrough
_HOP_BY_HOP_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "keep-alive",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "content-length",
        "accept-encoding",
    }
)


class SegmentStatus(StrEnum):
    """Diagnostic ``X-Segments-Cache`` values."""

    HIT = "HIT"
    MISS = "MISS"


# ---------------------------------------------------------------------------
# Target URL per mode
# ---------------------------------------------------------------------------


def target_from_proxy_path(target: str, query: str = "") -> str:
    """``/proxy/<target>`` → absolute URL. Raises ``InvalidTargetURLError``."""
    raw = f"{target}?{query}" if query else target
    return normalize_target_url(raw)


def target_from_route(origin: str, path: str, query: str = "") -> str:
    """Route mode: the inbound path and query are replayed against *origin*."""
    raw = f"{origin.rstrip('/')}/{path.lstrip('/')}"
    if query:
        raw = f"{raw}?{query}"
    return normalize_target_url(raw)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RelayRequest:
    """Inbound request, already resolved to an absolute target URL."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(slots=True)
class RelayResponse:
    status: int
    headers: list[tuple[str, str]]
    body: bytes
    cache_status: CacheStatus | None = None
    segment_status: SegmentStatus | None = None
    degraded: bool = False
    deferred: list[DeferredWrite] = field(default_factory=list)

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    async def run_deferred(self) -> None:
        """Run deferred cache writes. Failures are logged, never raised."""
        for write in self.deferred:
            try:
                await write()
            except Exception as e:
                logger.warning("Deferred cache write failed: %s", e)
                logger.debug("Deferred cache write failure detail", exc_info=True)
        self.deferred.clear()


def _relay_headers(headers: list[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in _STRIPPED_RESPONSE_HEADERS]


def _set_header(headers: list[tuple[str, str]], name: str, value: str) -> None:
    lowered = name.lower()
    headers[:] = [(k, v) for k, v in headers if k.lower() != lowered]
    headers.append((name, value))


def _utf8_content_type(content_type: str) -> str:
    media_type = content_type.split(";", 1)[0].strip() or "text/html"
    return f"{media_type}; charset=utf-8"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FetchOrchestrator:
    """Drives one request through the caches, the classifier and the rewrite pipeline.

    Concurrent segment-cache misses for the same fingerprint share a single
    in-flight classification call (in-process only).
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        client: httpx.AsyncClient,
        document_cache: DocumentCache,
        segment_cache: SegmentCache,
        classifier: Classifier,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._client = client
        self._documents = document_cache
        self._segments = segment_cache
        self._classifier = classifier
        self._clock = clock
        self._inflight: dict[str, asyncio.Future[Segments]] = {}

    @property
    def inflight_classifications(self) -> int:
        return len(self._inflight)

    async def handle(self, request: RelayRequest) -> RelayResponse:
        timer = PipelineTimer()
        path = urlsplit(request.url).path

        if is_resource_path(path):
            logger.debug("Resource path, relaying unmodified: %s", request.url)
            return await self._passthrough(request, timer, reason="resource")
        if request.method.upper() != "GET":
            return await self._passthrough(request, timer, reason="method")

        context = ClientContext.from_headers(request.headers, bot_header=self._config.bot_header)
        if context.is_bot:
            return await self._passthrough(request, timer, reason="bot")

        # CheckDocCache → Revalidate
        timer.stage("document")
        cached = await self._documents.get(request.url)
        stale = None if cached is not None else await self._documents.peek(request.url)
        try:
            result = await self._documents.fetch_with_revalidation(
                request.url,
                cached,
                stale=stale,
                headers=forwardable_headers(request.headers),
            )
        except OriginUnavailableError as e:
            return self._error_page(e, request, timer)

        if result.status != 200 or not self._is_html(result):
            logger.info(
                "Relaying %s unmodified (status=%d, content-type=%s)",
                request.url,
                result.status,
                result.content_type or "none",
                extra={"target": request.url, "status": result.status, "html_cache": result.cache_status},
            )
            return self._unmodified(result, timer)

        deferred: list[DeferredWrite] = []
        if result.cacheable:
            deferred.append(
                functools.partial(
                    self._documents.put,
                    request.url,
                    result.body,
                    result.validators,
                    result.content_type,
                )
            )

        # CheckSegCache → Classify
        timer.stage("segments")
        classification = ClassificationRequest(
            url=canonical_url(request.url),
            validators=result.validators,
            context=context,
        )
        key = build_key(classification)
        segments = await self._segments.get(key)
        if segments is not None:
            segment_status = SegmentStatus.HIT
        else:
            segment_status = SegmentStatus.MISS
            segments, leader = await self._classify_shared(key, classification)
            if leader and has_signal(segments):
                deferred.append(functools.partial(self._segments.put, key, segments))

        # Rewrite
        timer.stage("rewrite")
        html = result.body
        try:
            html = rewrite_document(
                result.body,
                RewriteContext.from_url(request.url),
                segments,
                js_namespace=self._config.js_namespace,
                inject_base=self._config.mode is RelayMode.PROXY,
            )
        except Exception as e:
            logger.warning("Rewrite failed for %s, serving body unmodified: %s", request.url, e)
            logger.debug("Rewrite failure detail", exc_info=True)
        timer.finalize()

        headers = _relay_headers(result.headers)
        _set_header(headers, "content-type", _utf8_content_type(result.content_type))
        self._add_diagnostics(headers, result, segment_status, timer)

        logger.info(
            "Relayed %s",
            request.url,
            extra={
                "target": request.url,
                "html_cache": result.cache_status,
                "segments_cache": segment_status,
                "slots": len(segments),
                "timing_ms": timer.elapsed_per_stage(),
            },
        )
        return RelayResponse(
            status=result.status,
            headers=headers,
            body=html.encode("utf-8"),
            cache_status=result.cache_status,
            segment_status=segment_status,
            degraded=result.degraded,
            deferred=deferred,
        )

    # -- Classification --

    async def _classify_shared(self, key: str, request: ClassificationRequest) -> tuple[Segments, bool]:
        """Classify once per key across concurrent callers.

        Returns ``(segments, leader)``; only the leader schedules the cache write.
        """
        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug("Joining in-flight classification for %s", key)
            return normalize_segments(await asyncio.shield(pending)), False

        future: asyncio.Future[Segments] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        segments = empty_segments()
        try:
            segments = await self._classifier.classify(request, self._config.classifier_timeout)
        except Exception as e:
            logger.warning("Classifier raised for %s, continuing without segments: %s", request.url, e)
            logger.debug("Classifier failure detail", exc_info=True)
        finally:
            self._inflight.pop(key, None)
            future.set_result(segments)
        return normalize_segments(segments), True

    # -- Side exits --

    def _is_html(self, result: RevalidationResult) -> bool:
        if result.content_type:
            return is_html_content_type(result.content_type)
        return looks_like_html(result.body)

    def _unmodified(self, result: RevalidationResult, timer: PipelineTimer) -> RelayResponse:
        timer.finalize()
        headers = _relay_headers(result.headers)
        headers.append(("Server-Timing", timer.server_timing()))
        return RelayResponse(
            status=result.status,
            headers=headers,
            body=result.content,
            cache_status=result.cache_status,
            degraded=result.degraded,
        )

    async def _passthrough(self, request: RelayRequest, timer: PipelineTimer, *, reason: str) -> RelayResponse:
        """ServeUpstreamUnmodified: replay the request against the origin, no caches."""
        timer.stage("upstream")
        forwarded = [(k, v) for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP_REQUEST_HEADERS]
        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=forwarded,
                content=request.body or None,
                timeout=self._config.origin_timeout,
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            return self._error_page(
                OriginUnavailableError(f"origin timed out: {e!r}", url=request.url, timed_out=True), request, timer
            )
        except httpx.HTTPError as e:
            return self._error_page(
                OriginUnavailableError(f"origin unreachable: {e!r}", url=request.url), request, timer
            )
        timer.finalize()
        logger.info(
            "Passthrough %s %s",
            request.method,
            request.url,
            extra={"target": request.url, "reason": reason, "status": response.status_code},
        )
        headers = _relay_headers(list(response.headers.multi_items()))
        headers.append(("Server-Timing", timer.server_timing()))
        return RelayResponse(status=response.status_code, headers=headers, body=response.content)

    def _error_page(self, exc: OriginUnavailableError, request: RelayRequest, timer: PipelineTimer) -> RelayResponse:
        timer.finalize()
        problem = from_exception(exc, instance=request.url)
        logger.warning(
            "Origin unavailable for %s with no cached copy: %s",
            request.url,
            exc,
            extra={"target": request.url, "status": problem.status},
        )
        headers = [
            ("content-type", "application/problem+json"),
            ("cache-control", "no-store"),
            ("Server-Timing", timer.server_timing()),
        ]
        return RelayResponse(status=problem.status, headers=headers, body=problem.to_json().encode("utf-8"))

    # -- Diagnostics --

    def _add_diagnostics(
        self,
        headers: list[tuple[str, str]],
        result: RevalidationResult,
        segment_status: SegmentStatus,
        timer: PipelineTimer,
    ) -> None:
        headers.append(("X-HTML-Cache", result.cache_status.value))
        if result.served_from_cache:
            age = max(0, int(self._clock() - result.fetched_at))
            headers.append(("X-Cache-Age", str(age)))
        if result.validators.etag:
            headers.append(("X-Cache-ETag", result.validators.etag))
        if result.validators.last_modified:
            headers.append(("X-Cache-Last-Modified", result.validators.last_modified))
        if not result.validators.present:
            headers.append(("X-HTML-Cache-Validators", "none"))
        headers.append(("X-Segments-Cache", segment_status.value))
        headers.append(("Server-Timing", timer.server_timing()))
