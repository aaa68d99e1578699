# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""URL resolution and normalization.

Pure functions — no network, no cache access.

- ``normalize_target_url``: the single ingress normalizer; everything
  downstream consumes only its output.
- ``canonical_url``: cache identity (scheme + host + path, query excluded).
- ``resolve_url``: reference resolution against a ``RewriteContext``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit, urlunsplit

from .errors import InvalidTargetURLError

_DEFAULT_PORTS = {"http": 80, "https": 443}
_ALLOWED_SCHEMES = frozenset({"http", "https"})

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")
# "host:8080/..." looks like a scheme to _SCHEME_RE; a digit after the colon means port
_NON_HTTP_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):(?!\d)")
_COLLAPSED_SCHEME_RE = re.compile(r"^(https?):/*", re.IGNORECASE)
_ENCODED_TARGET_RE = re.compile(r"^(?:https?%(?:25)?3A|%(?:25)?2F%(?:25)?2F)", re.IGNORECASE)
_MAX_DECODE_PASSES = 2

_UNTOUCHABLE_PREFIXES = ("#", "javascript:", "data:")

_RESOURCE_EXT_RE = re.compile(
    r"\.(?:js|mjs|css|png|jpe?g|gif|svg|webp|avif|ico|mp4|webm|mp3|wav|pdf|json|xml|woff2?|ttf|otf|map)$",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Rewrite context
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RewriteContext:
    """Base origin + directory of the document being rewritten."""

    base_origin: str  # scheme://host[:port]
    base_path: str = "/"  # always starts and ends with "/"

    @property
    def scheme(self) -> str:
        return self.base_origin.split(":", 1)[0]

    @property
    def base_href(self) -> str:
        return f"{self.base_origin}{self.base_path}"

    @classmethod
    def from_url(cls, url: str) -> RewriteContext:
        parts = urlsplit(url)
        path = parts.path or "/"
        directory = path[: path.rfind("/") + 1] or "/"
        return cls(base_origin=origin_of(url), base_path=directory)


# ---------------------------------------------------------------------------
# Canonical forms
# ---------------------------------------------------------------------------


def _netloc(scheme: str, hostname: str, port: int | None) -> str:
    if port is None or _DEFAULT_PORTS.get(scheme) == port:
        return hostname
    return f"{hostname}:{port}"


def origin_of(url: str) -> str:
    """Extract scheme://host[:port] (lowercased, default port omitted)."""
    parts = urlsplit(url)
    scheme = (parts.scheme or "https").lower()
    hostname = (parts.hostname or "").lower()
    return f"{scheme}://{_netloc(scheme, hostname, parts.port)}"


def canonical_url(url: str) -> str:
    """Cache identity for a document: scheme + host + path.

    Query and fragment are excluded to raise the hit rate. Path case and
    trailing slash are preserved; an empty path becomes ``/``.
    """
    parts = urlsplit(url)
    return f"{origin_of(url)}{parts.path or '/'}"


def normalize_target_url(raw: str) -> str:
    """Normalize an inbound target reference into an absolute http(s) URL.

    Accepts full URLs, bare hosts (``example.com/x``), protocol-relative
    (``//example.com``), collapsed schemes (``https:/example.com``) and
    percent-encoded targets. The fragment is dropped; the query is kept.

    Raises:
        InvalidTargetURLError: if no http(s) URL with a host can be derived.
    """
    value = raw.strip()
    for _ in range(_MAX_DECODE_PASSES):
        if not _ENCODED_TARGET_RE.match(value):
            break
        value = unquote(value)

    if not value:
        raise InvalidTargetURLError("empty target URL", raw=raw)

    if value.startswith("//"):
        value = f"https:{value}"
    elif _COLLAPSED_SCHEME_RE.match(value):
        value = _COLLAPSED_SCHEME_RE.sub(lambda m: f"{m.group(1).lower()}://", value, count=1)
    else:
        m = _NON_HTTP_SCHEME_RE.match(value)
        if m and m.group(1).lower() not in _ALLOWED_SCHEMES:
            raise InvalidTargetURLError(f"unsupported scheme {m.group(1)!r}", raw=raw)
        value = f"https://{value.lstrip('/')}"

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise InvalidTargetURLError(f"unsupported scheme {parts.scheme!r}", raw=raw)
    hostname = (parts.hostname or "").lower()
    if not hostname or "%" in hostname or any(c.isspace() for c in hostname):
        raise InvalidTargetURLError("target URL has no valid host", raw=raw)
    try:
        port = parts.port
    except ValueError:
        raise InvalidTargetURLError("target URL has an invalid port", raw=raw) from None

    return urlunsplit((scheme, _netloc(scheme, hostname, port), parts.path or "/", parts.query, ""))


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def is_untouchable(ref: str) -> bool:
    """Fragment-only, ``javascript:`` and ``data:`` references are never rewritten."""
    return ref.lower().startswith(_UNTOUCHABLE_PREFIXES)


def has_scheme(ref: str) -> bool:
    return bool(_SCHEME_RE.match(ref))


def resolve_url(ref: str, ctx: RewriteContext) -> str:
    """Resolve *ref* against *ctx*. Idempotent: absolute input is returned unchanged.

    Priority: absolute → protocol-relative → root-relative → relative.
    Empty references (the current document) are left alone.
    """
    if not ref or is_untouchable(ref) or has_scheme(ref):
        return ref
    if ref.startswith("//"):
        return f"{ctx.scheme}:{ref}"
    if ref.startswith("/"):
        return f"{ctx.base_origin}{ref}"
    return f"{ctx.base_origin}{ctx.base_path}{ref}"


def is_resource_path(path: str) -> bool:
    """Cheap heuristic: does *path* end in a static-resource extension?"""
    return bool(_RESOURCE_EXT_RE.search(path))
