# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ASGI middleware — request-ID propagation and CORS for relayed responses.

- **Pure ASGI** — no BaseHTTPMiddleware (no body buffering).
- **X-Request-ID** — validated (log injection) or generated, echoed on the
  response, bound into structlog contextvars for the request's lifetime.
- **CORS** — relayed pages are consumed cross-origin; ``Access-Control-*``
  headers from the origin are replaced, never merged, and ``OPTIONS`` is
  answered locally with 204.
"""

from __future__ import annotations

import logging
import re
import uuid

import structlog

logger = logging.getLogger(__name__)

_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9._\-]{1,128}$")

_CORS_METHODS = b"GET, HEAD, POST, PUT, PATCH, DELETE, OPTIONS"
_CORS_HEADERS = b"*"
_CORS_MAX_AGE = b"86400"


def _sanitize_request_id(raw: str | None) -> str:
    """Return *raw* if it is a safe request ID, otherwise a fresh UUID hex."""
    if raw and _REQUEST_ID_RE.fullmatch(raw):
        return raw
    return uuid.uuid4().hex


def _get_header(raw_headers: list[tuple[bytes, bytes]], name: bytes) -> str | None:
    """Get the first header value by lowercase name."""
    for hdr_name, hdr_value in raw_headers:
        if hdr_name.lower() == name:
            return hdr_value.decode("latin-1").strip()
    return None


# ── Request ID ────────────────────────────────────────────────────────


class RequestIdMiddleware:
    """Outermost middleware: request ID in ``scope["state"]``, logs and response."""

    def __init__(self, app) -> None:
        self.app = app

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope.setdefault("state", {})
        request_id = _sanitize_request_id(_get_header(scope.get("headers", []), b"x-request-id"))
        scope["state"]["request_id"] = request_id

        async def _send_with_request_id(message) -> None:
            if message["type"] == "http.response.start":
                headers = [(k, v) for k, v in message.get("headers", []) if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            method=scope.get("method", ""),
            path=scope.get("path", ""),
        ):
            await self.app(scope, receive, _send_with_request_id)


# ── CORS ──────────────────────────────────────────────────────────────


class CorsMiddleware:
    """Overrides CORS headers on every response; answers preflight locally."""

    def __init__(self, app, *, allow_origin: str = "*") -> None:
        self.app = app
        self._cors_headers: tuple[tuple[bytes, bytes], ...] = (
            (b"access-control-allow-origin", allow_origin.encode("latin-1")),
            (b"access-control-allow-methods", _CORS_METHODS),
            (b"access-control-allow-headers", _CORS_HEADERS),
            (b"access-control-expose-headers", b"*"),
        )

    async def __call__(self, scope, receive, send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope.get("method") == "OPTIONS":
            await send(
                {
                    "type": "http.response.start",
                    "status": 204,
                    "headers": [*self._cors_headers, (b"access-control-max-age", _CORS_MAX_AGE)],
                }
            )
            await send({"type": "http.response.body", "body": b""})
            return

        async def _send_with_cors(message) -> None:
            if message["type"] == "http.response.start":
                headers = [
                    (k, v) for k, v in message.get("headers", []) if not k.lower().startswith(b"access-control-")
                ]
                headers.extend(self._cors_headers)
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, _send_with_cors)
