# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Document rewrite pipeline: protocol-relative URL repair + segment injection.

String-level rewriting (no DOM parse) so bytes outside the touched
attributes are preserved exactly. Steps:

1. choose one head insertion point (``<head>`` > ``<html>`` > doctype > 0)
2. build the ``<script>`` payload carrying ``window.<ns>.segments``
3. insert the payload
4. give protocol-relative references the base scheme

The pipeline is idempotent: rewritten URLs are absolute and no longer
match, and a document that already carries the injection marker is not
injected again. URL repair runs after insertion so a second pass sees
the same quoting structure as the first.
"""

from __future__ import annotations

import json
import re

from . import Segments, normalize_segments
from .urls import RewriteContext, resolve_url

INJECTION_MARKER = "data-segrelay-injected"

_HEAD_RE = re.compile(r"<head(?=[\s>/])[^>]*>", re.IGNORECASE)
_HTML_RE = re.compile(r"<html(?=[\s>])[^>]*>", re.IGNORECASE)
_DOCTYPE_RE = re.compile(r"<!DOCTYPE\s+html\b[^>]*>", re.IGNORECASE)
_BASE_TAG_RE = re.compile(r"<base[\s>/]", re.IGNORECASE)
# An unterminated comment runs to the end of the document
_COMMENT_RE = re.compile(r"<!--.*?(?:-->|\Z)", re.DOTALL)

# Resource-bearing attributes holding a single protocol-relative URL
_ATTR_RE = re.compile(
    r"""(?P<prefix>\s(?:src|href|action|formaction|poster|data-src|data|background)\s*=\s*)"""
    r"""(?P<quote>["']?)(?P<url>//[^"'\s>]*)(?P=quote)""",
    re.IGNORECASE,
)
_SRCSET_RE = re.compile(
    r"""(?P<prefix>\s(?:srcset|data-srcset)\s*=\s*)(?P<quote>["'])(?P<value>[^"']*)(?P=quote)""",
    re.IGNORECASE,
)
_SRCSET_CANDIDATE_RE = re.compile(r"(?P<lead>(?:^|,)\s*)(?P<url>//[^\s,]+)")
# Only the "//" is consumed so a url( token inside the reference is still scanned
_CSS_URL_RE = re.compile(r"""(?P<head>\burl\(\s*(?P<quote>["']?))(?P<url>//)(?=[^"')\s])""", re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(r"""(?P<head>@import\s+(?P<quote>["']))(?P<url>//[^"']+)""", re.IGNORECASE)

_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
_SNIFF_WINDOW = 1024

# Characters that must not appear raw inside an inline <script>
_SCRIPT_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "/": "\\/",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}
_SCRIPT_ESCAPE_RE = re.compile("[<>&/\u2028\u2029]")


# ---------------------------------------------------------------------------
# Content detection
# ---------------------------------------------------------------------------


def is_html_content_type(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in _HTML_CONTENT_TYPES


def looks_like_html(body: str) -> bool:
    """Sniff a body with no content-type header."""
    head = body[:_SNIFF_WINDOW].lstrip().lower()
    return head.startswith("<!doctype html") or "<html" in head or "<head" in head


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def _search_outside_comments(
    pattern: re.Pattern[str], html: str, comments: list[tuple[int, int]]
) -> re.Match[str] | None:
    for m in pattern.finditer(html):
        if not any(start <= m.start() < end for start, end in comments):
            return m
    return None


def find_head_insertion_point(html: str) -> int:
    """Offset right after ``<head …>``, else ``<html …>``, else the doctype, else 0.

    Tags inside ``<!-- … -->`` (including IE conditional comments) are
    ignored; a script placed there would never run.
    """
    comments = [m.span() for m in _COMMENT_RE.finditer(html)]
    for pattern in (_HEAD_RE, _HTML_RE, _DOCTYPE_RE):
        m = _search_outside_comments(pattern, html, comments)
        if m:
            return m.end()
    return 0


def serialize_segments(segments: Segments | None) -> str:
    """JSON for an inline script: global slot guaranteed, script-breaking chars escaped."""
    raw = json.dumps(normalize_segments(segments), ensure_ascii=False, separators=(",", ":"))
    return _SCRIPT_ESCAPE_RE.sub(lambda m: _SCRIPT_ESCAPES[m.group(0)], raw)


def build_injection_payload(
    segments: Segments | None,
    *,
    js_namespace: str = "scope3",
    base_href: str | None = None,
) -> str:
    """The injected block. Always defines ``window.<ns>.segments``, even when empty."""
    payload = (
        f"<script {INJECTION_MARKER}>"
        f"window.{js_namespace} = window.{js_namespace} || {{}};"
        f"window.{js_namespace}.segments = {serialize_segments(segments)};"
        "</script>"
    )
    if base_href:
        payload += f'<base href="{base_href}" {INJECTION_MARKER}>'
    return payload


def rewrite_protocol_relative(html: str, ctx: RewriteContext) -> str:
    """Give ``//host/...`` references in resource attributes and CSS the base scheme."""

    def _attr(m: re.Match[str]) -> str:
        return f"{m.group('prefix')}{m.group('quote')}{resolve_url(m.group('url'), ctx)}{m.group('quote')}"

    def _srcset(m: re.Match[str]) -> str:
        value = _SRCSET_CANDIDATE_RE.sub(
            lambda c: f"{c.group('lead')}{resolve_url(c.group('url'), ctx)}",
            m.group("value"),
        )
        return f"{m.group('prefix')}{m.group('quote')}{value}{m.group('quote')}"

    def _css(m: re.Match[str]) -> str:
        return f"{m.group('head')}{resolve_url(m.group('url'), ctx)}"

    html = _ATTR_RE.sub(_attr, html)
    html = _SRCSET_RE.sub(_srcset, html)
    html = _CSS_URL_RE.sub(_css, html)
    html = _CSS_IMPORT_RE.sub(_css, html)
    return html


def is_injected(html: str) -> bool:
    return INJECTION_MARKER in html


def rewrite_document(
    html: str,
    ctx: RewriteContext,
    segments: Segments | None,
    *,
    js_namespace: str = "scope3",
    inject_base: bool = False,
) -> str:
    """Run the full pipeline. Safe to run on its own output (byte-identical result).

    *inject_base* adds ``<base href>`` pointing at the origin so relative
    references keep resolving when the page is served under ``/proxy/``;
    skipped when the document declares its own ``<base>``.
    """
    if not is_injected(html):
        base_href = ctx.base_href if inject_base and not _BASE_TAG_RE.search(html) else None
        payload = build_injection_payload(segments, js_namespace=js_namespace, base_href=base_href)
        point = find_head_insertion_point(html)
        html = html[:point] + payload + html[point:]
    return rewrite_protocol_relative(html, ctx)
