# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Segment Relay: edge content relay with classification-segment injection.

Fetches a page from an origin, attaches content-classification labels
("segments") from a third-party classifier, and serves the rewritten page:
- document cache with HTTP conditional revalidation (ETag / Last-Modified)
- segment cache keyed by a normalized request fingerprint
- rewrite pipeline that injects ``window.<ns>.segments`` into ``<head>``
"""

from __future__ import annotations

__version__ = "0.3.0"

GLOBAL_SLOT = "global"

# slot-id -> ordered labels; GLOBAL_SLOT is always present
Segments = dict[str, list[str]]


def empty_segments() -> Segments:
    """The "no signal" result: only an empty global slot."""
    return {GLOBAL_SLOT: []}


def normalize_segments(raw: Segments | None) -> Segments:
    """Return a copy of *raw* that always carries the global slot first.

    Labels are stringified and de-duplicated in first-seen order.
    """
    result: Segments = {GLOBAL_SLOT: []}
    if not raw:
        return result
    for slot, labels in raw.items():
        result[str(slot)] = list(dict.fromkeys(str(label) for label in labels))
    return result


def has_signal(segments: Segments | None) -> bool:
    """True when at least one slot holds a label."""
    if not segments:
        return False
    return any(labels for labels in segments.values())
