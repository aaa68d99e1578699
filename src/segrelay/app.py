# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Starlette application for the relay.

Routes:

- ``GET /health``, ``/livez``  — process alive
- ``GET /readyz``              — runtime (store, client, caches) built
- proxy mode: ``/proxy/{target}`` — any method, target normalized at ingress
- route mode: every other path is replayed against ``config.origin``

Middleware chain (outermost first): RequestId → Cors → app.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import httpx
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from . import __version__
from .classifier import Classifier, build_classifier
from .config import RelayConfig, RelayMode
from .document_cache import DocumentCache
from .errors import InvalidTargetURLError
from .middleware import CorsMiddleware, RequestIdMiddleware
from .orchestrator import FetchOrchestrator, RelayRequest, RelayResponse, target_from_proxy_path, target_from_route
from .problem_details import ProblemType, from_exception, from_problem_type
from .segment_cache import SegmentCache
from .store import CacheStoreProtocol, open_store

logger = logging.getLogger(__name__)

_RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


# ── Runtime ──────────────────────────────────────────────────────────


@dataclass(slots=True)
class RelayRuntime:
    """Long-lived components shared by every request."""

    config: RelayConfig
    store: CacheStoreProtocol
    client: httpx.AsyncClient
    document_cache: DocumentCache
    segment_cache: SegmentCache
    classifier: Classifier
    orchestrator: FetchOrchestrator


def default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(headers={"user-agent": f"segrelay/{__version__}"})


def build_runtime(
    config: RelayConfig,
    *,
    store: CacheStoreProtocol,
    client: httpx.AsyncClient,
    classifier: Classifier | None = None,
    clock: Callable[[], float] = time.time,
) -> RelayRuntime:
    """Wire caches, classifier and orchestrator over *store* and *client*."""
    document_cache = DocumentCache(
        store,
        client,
        ttl=config.document_ttl,
        retention=config.stale_retention,
        origin_timeout=config.origin_timeout,
        clock=clock,
    )
    segment_cache = SegmentCache(store, ttl=config.segment_ttl, clock=clock)
    if classifier is None:
        classifier = build_classifier(config, client)
    orchestrator = FetchOrchestrator(
        config,
        client=client,
        document_cache=document_cache,
        segment_cache=segment_cache,
        classifier=classifier,
        clock=clock,
    )
    return RelayRuntime(
        config=config,
        store=store,
        client=client,
        document_cache=document_cache,
        segment_cache=segment_cache,
        classifier=classifier,
        orchestrator=orchestrator,
    )


# ── Response conversion ──────────────────────────────────────────────


def to_starlette_response(relayed: RelayResponse) -> Response:
    """Keep duplicate headers (Set-Cookie); deferred writes run after the body is sent."""
    background = BackgroundTask(relayed.run_deferred) if relayed.deferred else None
    response = Response(content=relayed.body, status_code=relayed.status, background=background)
    response.raw_headers.extend(
        (name.lower().encode("latin-1"), value.encode("latin-1", errors="replace")) for name, value in relayed.headers
    )
    return response


# ── Endpoints ────────────────────────────────────────────────────────


def _runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime


async def _health(request: Request) -> JSONResponse:
    runtime: RelayRuntime | None = getattr(request.app.state, "runtime", None)
    payload: dict = {"status": "ok", "version": __version__}
    if runtime is not None:
        stats = runtime.segment_cache.stats
        payload["mode"] = runtime.config.mode.value
        payload["segment_cache"] = {
            "hits": stats.hits,
            "misses": stats.misses,
            "writes": stats.writes,
            "rejected_writes": stats.rejected_writes,
            "hit_rate": round(stats.hit_rate, 3),
        }
    return JSONResponse(payload)


async def _livez(request: Request) -> JSONResponse:
    """K8s liveness probe — process alive check."""
    return JSONResponse({"status": "ok"})


async def _readyz(request: Request) -> JSONResponse:
    """K8s readiness probe — store and client are up."""
    if getattr(request.app.state, "runtime", None) is None:
        return JSONResponse({"status": "not_ready"}, status_code=503)
    return JSONResponse({"status": "ready"})


async def _relay(request: Request, target: str) -> Response:
    runtime = _runtime(request)
    body = b"" if request.method in _BODYLESS_METHODS else await request.body()
    relayed = await runtime.orchestrator.handle(
        RelayRequest(method=request.method, url=target, headers=request.headers, body=body)
    )
    return to_starlette_response(relayed)


async def _proxy_endpoint(request: Request) -> Response:
    try:
        target = target_from_proxy_path(request.path_params["target"], request.url.query)
    except InvalidTargetURLError as e:
        logger.info("Rejected proxy target %r: %s", e.raw, e)
        return from_exception(e, instance=request.url.path).to_response()
    return await _relay(request, target)


async def _route_endpoint(request: Request) -> Response:
    try:
        target = target_from_route(_runtime(request).config.origin, request.url.path, request.url.query)
    except InvalidTargetURLError as e:
        return from_exception(e, instance=request.url.path).to_response()
    return await _relay(request, target)


async def _not_found(request: Request) -> Response:
    return from_problem_type(
        ProblemType.NOT_FOUND,
        "Use /proxy/<url> to relay a page.",
        instance=request.url.path,
    ).to_response()


# ── Factory ──────────────────────────────────────────────────────────


def create_app(
    config: RelayConfig,
    *,
    store: CacheStoreProtocol | None = None,
    client: httpx.AsyncClient | None = None,
    classifier: Classifier | None = None,
    clock: Callable[[], float] = time.time,
):
    """Build the ASGI application.

    When both *store* and *client* are supplied the runtime is wired
    immediately and owned by the caller; otherwise the lifespan opens
    (and later closes) whatever is missing.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if getattr(app.state, "runtime", None) is not None:
            yield
            return
        owned_store = store is None
        owned_client = client is None
        run_store = store if store is not None else await open_store(
            config.db_path, max_entries=config.max_memory_entries
        )
        run_client = client if client is not None else default_client()
        app.state.runtime = build_runtime(config, store=run_store, client=run_client, classifier=classifier, clock=clock)
        logger.info("Relay started (mode=%s, classifier=%s)", config.mode, type(app.state.runtime.classifier).__name__)
        try:
            yield
        finally:
            app.state.runtime = None
            if owned_client:
                await run_client.aclose()
            if owned_store:
                await run_store.close()
            logger.info("Relay stopped")

    routes = [
        Route("/health", _health, methods=["GET"]),
        Route("/livez", _livez, methods=["GET"]),
        Route("/readyz", _readyz, methods=["GET"]),
    ]
    if config.mode is RelayMode.PROXY:
        routes.append(Route("/proxy/{target:path}", _proxy_endpoint, methods=_RELAY_METHODS))
        routes.append(Route("/{path:path}", _not_found, methods=_RELAY_METHODS))
    else:
        routes.append(Route("/{path:path}", _route_endpoint, methods=_RELAY_METHODS))

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = None
    if store is not None and client is not None:
        app.state.runtime = build_runtime(config, store=store, client=client, classifier=classifier, clock=clock)

    wrapped = CorsMiddleware(app, allow_origin=config.cors_origin)
    return RequestIdMiddleware(wrapped)
