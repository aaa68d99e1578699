# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RFC 9457 Problem Details for relay error responses.

The relay only ever emits an error page when there is nothing to serve:
the origin failed and no cached copy exists, or the inbound target could
not be turned into a URL. Everything else degrades silently.

Type URI namespace: ``https://segrelay.dev/errors/{slug}``
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from starlette.responses import JSONResponse

from .errors import InvalidTargetURLError, OriginUnavailableError

# ── Constants ────────────────────────────────────────────────────────

_ERROR_BASE = "https://segrelay.dev/errors"

MAX_DETAIL_LENGTH = 200

# ── ProblemType taxonomy ─────────────────────────────────────────────


class ProblemType(StrEnum):
    ORIGIN_UNAVAILABLE = "origin-unavailable"
    ORIGIN_TIMEOUT = "origin-timeout"
    INVALID_TARGET = "invalid-target"
    NOT_FOUND = "not-found"
    INTERNAL_ERROR = "internal-error"

    @property
    def uri(self) -> str:
        """Full type URI for RFC 9457 ``type`` field."""
        return f"{_ERROR_BASE}/{self.value}"


_TYPE_METADATA: dict[ProblemType, tuple[int, str]] = {
    ProblemType.ORIGIN_UNAVAILABLE: (502, "Origin Unavailable"),
    ProblemType.ORIGIN_TIMEOUT: (504, "Origin Timed Out"),
    ProblemType.INVALID_TARGET: (400, "Invalid Target URL"),
    ProblemType.NOT_FOUND: (404, "Not Found"),
    ProblemType.INTERNAL_ERROR: (500, "Internal Relay Error"),
}

# ── Secret sanitization patterns ─────────────────────────────────────

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (
        re.compile(r"(?:API_KEY|SECRET|TOKEN|PASSWORD|AUTH)\s*[=:]\s*\S+", re.IGNORECASE),
        "<redacted>",
    ),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{8,}"), "Basic <redacted>"),
    (re.compile(r"://[^@\s/]+@"), "://<redacted>@"),
    (
        re.compile(r"eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"),
        "<redacted>",
    ),
]

_PATH_PATTERN = re.compile(
    r"(/(?:Users|home|tmp|var|etc|opt|root|srv|proc|sys|usr)/[\w./-]+"
    r"|[A-Z]:\\[\w.\\-]+)"
)


def sanitize_detail(text: str) -> str:
    """Scrub secrets and filesystem paths from *text*, truncated to ``MAX_DETAIL_LENGTH``."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _PATH_PATTERN.sub("<path>", text)
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH] + "..."
    return text


# ── ProblemDetail dataclass ──────────────────────────────────────────

_STANDARD_FIELDS = frozenset({"type", "title", "status", "detail", "instance"})


@dataclass(frozen=True, slots=True)
class ProblemDetail:
    """RFC 9457 Problem Detail object."""

    type: str = "about:blank"
    title: str = ""
    status: int = 500
    detail: str = ""
    instance: str = ""
    extensions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """RFC 9457 JSON dict.  Empty optional fields omitted, extensions merged at top level."""
        d: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.title:
            d["title"] = self.title
        if self.detail:
            d["detail"] = self.detail
        if self.instance:
            d["instance"] = self.instance
        for k, v in self.extensions.items():
            if k not in _STANDARD_FIELDS:
                d[k] = v
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        """Starlette ``JSONResponse`` with ``application/problem+json`` and ``no-store``."""
        hdrs = {"Cache-Control": "no-store", "Content-Language": "en"}
        if headers:
            hdrs.update(headers)
        return JSONResponse(
            content=self.to_dict(),
            status_code=self.status,
            media_type="application/problem+json",
            headers=hdrs,
        )

    def to_cli_text(self) -> str:
        return f"Error: {self.title}: {self.detail}" if self.detail else f"Error: {self.title}"


# ── Factory functions ────────────────────────────────────────────────


def from_problem_type(
    problem_type: ProblemType,
    detail: str = "",
    *,
    instance: str = "",
    extensions: dict[str, Any] | None = None,
) -> ProblemDetail:
    status, title = _TYPE_METADATA[problem_type]
    return ProblemDetail(
        type=problem_type.uri,
        title=title,
        status=status,
        detail=sanitize_detail(detail),
        instance=instance,
        extensions=dict(extensions) if extensions else {},
    )


def from_exception(exc: Exception, *, instance: str = "") -> ProblemDetail:
    """Map a relay exception to a ProblemDetail.

    Unknown exceptions get a generic message so internal state never
    leaks into a response body.
    """
    if isinstance(exc, OriginUnavailableError):
        problem_type = ProblemType.ORIGIN_TIMEOUT if exc.timed_out else ProblemType.ORIGIN_UNAVAILABLE
        ext: dict[str, Any] = {"url": sanitize_detail(exc.url)} if exc.url else {}
        if exc.status is not None:
            ext["origin_status"] = exc.status
        return from_problem_type(problem_type, str(exc), instance=instance, extensions=ext)
    if isinstance(exc, InvalidTargetURLError):
        return from_problem_type(ProblemType.INVALID_TARGET, str(exc), instance=instance)
    return from_problem_type(ProblemType.INTERNAL_ERROR, "An unexpected error occurred.", instance=instance)
