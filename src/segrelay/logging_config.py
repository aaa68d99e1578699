# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge. Development: ConsoleRenderer, production: JSONRenderer.

Leaf module — no segrelay imports. Called once by the CLI before the
server starts; request handlers never touch logging configuration.

Relay modules log through stdlib ``logging`` and attach per-request
fields with ``extra={...}``. Only the names in ``RELAY_LOG_FIELDS`` are
lifted into the event dict, and they are rendered the same way in both
outputs: cache statuses as their header value, stage timings as whole
milliseconds, and ``request_id`` always present on a relay line.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum

import structlog
from structlog.typing import EventDict, WrappedLogger

# Transport libraries log every request line at INFO; the relay logs its own.
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

RELAY_LOG_FIELDS = ("target", "html_cache", "segments_cache", "slots", "reason", "status", "timing_ms")

_NO_REQUEST_ID = "-"


def render_relay_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Normalize relay fields lifted from ``extra``."""
    present = [name for name in RELAY_LOG_FIELDS if name in event_dict]
    if not present:
        return event_dict
    for name in present:
        value = event_dict[name]
        if isinstance(value, Enum):
            event_dict[name] = value.value
    timing = event_dict.get("timing_ms")
    if isinstance(timing, dict):
        event_dict["timing_ms"] = {stage: round(ms) for stage, ms in timing.items()}
    event_dict.setdefault("request_id", _NO_REQUEST_ID)
    return event_dict


def configure(*, json_output: bool = False, level: str = "INFO") -> None:
    """Configure structlog with stdlib bridge.

    Args:
        json_output: True for JSON lines (deployed relay), False for human-readable.
        level: Root logger level (default INFO).
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(allow=RELAY_LOG_FIELDS),
        render_relay_fields,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(root_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
