# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Segment Relay exception hierarchy.

All relay-specific errors inherit from RelayError. Only
OriginUnavailableError is allowed to reach the HTTP layer; everything
else is absorbed where it is raised (classification, cache backends).
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class InvalidTargetURLError(RelayError):
    """Inbound target URL could not be normalized to an http(s) URL."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class OriginUnavailableError(RelayError):
    """Origin fetch failed and no cached copy was available as fallback."""

    def __init__(
        self,
        message: str,
        *,
        url: str = "",
        status: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.timed_out = timed_out


class ClassificationError(RelayError):
    """Classification call failed (internal to the classifier, never propagated)."""

    def __init__(self, message: str, *, status: int | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.timed_out = timed_out


class CacheBackendError(RelayError):
    """Cache store read/write failure (treated as miss / no-op by callers)."""
