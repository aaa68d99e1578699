# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Relay configuration — built once at startup, passed explicitly.

``RelayConfig.from_env()`` reads ``SEGRELAY_*`` variables; CLI flags are
layered on top with ``dataclasses.replace``. Nothing downstream reads the
environment per request.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

DEFAULT_CLASSIFIER_ENDPOINT = "https://rtdp.scope3.com/publishers/qa"


class RelayMode(StrEnum):
    """How the target URL is obtained from an inbound request."""

    PROXY = "proxy"  # /proxy/<absolute-url>
    ROUTE = "route"  # every path is forwarded to a fixed origin


_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name, "").strip()
    return raw or default


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Immutable relay configuration."""

    mode: RelayMode = RelayMode.PROXY
    origin: str = ""  # route mode only: scheme://host[:port]

    # Cache TTLs (seconds) — one per namespace, never per entry
    document_ttl: float = 86_400.0  # 24 hours
    segment_ttl: float = 3_600.0  # 1 hour
    stale_retention: float = 604_800.0  # how long expired documents stay available as fallback
    max_memory_entries: int = 10_000  # per namespace, in-memory store only

    # Classification service
    classifier_endpoint: str = DEFAULT_CLASSIFIER_ENDPOINT
    classifier_token: str = ""
    classifier_auth_header: str = "x-scope3-auth"
    classifier_namespace: str = "scope3"
    classifier_timeout: float = 1.0
    mock_unauthenticated: bool = True

    # Origin
    origin_timeout: float = 10.0

    # Rewrite / response
    js_namespace: str = "scope3"
    cors_origin: str = "*"
    bot_header: str = "x-verified-bot"

    # Storage + server
    db_path: str = ""
    host: str = "127.0.0.1"
    port: int = 8787
    log_json: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not isinstance(self.mode, RelayMode):
            object.__setattr__(self, "mode", RelayMode(self.mode))
        if self.document_ttl <= 0:
            raise ValueError(f"document_ttl must be > 0, got {self.document_ttl}")
        if self.segment_ttl <= 0:
            raise ValueError(f"segment_ttl must be > 0, got {self.segment_ttl}")
        if self.stale_retention < self.document_ttl:
            raise ValueError(
                f"stale_retention ({self.stale_retention}) must be >= document_ttl ({self.document_ttl})"
            )
        if self.max_memory_entries <= 0:
            raise ValueError(f"max_memory_entries must be > 0, got {self.max_memory_entries}")
        if self.classifier_timeout <= 0:
            raise ValueError(f"classifier_timeout must be > 0, got {self.classifier_timeout}")
        if self.origin_timeout <= 0:
            raise ValueError(f"origin_timeout must be > 0, got {self.origin_timeout}")
        if not self.js_namespace.isidentifier():
            raise ValueError(f"js_namespace must be a JavaScript identifier, got {self.js_namespace!r}")
        if self.mode is RelayMode.ROUTE and not self.origin:
            raise ValueError("origin is required in route mode (SEGRELAY_ORIGIN)")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be 1-65535, got {self.port}")

    @property
    def has_classifier_token(self) -> bool:
        return bool(self.classifier_token)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> RelayConfig:
        """Build a config from ``SEGRELAY_*`` variables (defaults for anything unset)."""
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            mode=RelayMode(_env_str(env, "SEGRELAY_MODE", defaults.mode.value).lower()),
            origin=_env_str(env, "SEGRELAY_ORIGIN", defaults.origin).rstrip("/"),
            document_ttl=_env_float(env, "SEGRELAY_HTML_CACHE_TTL", defaults.document_ttl),
            segment_ttl=_env_float(env, "SEGRELAY_SEGMENT_CACHE_TTL", defaults.segment_ttl),
            stale_retention=_env_float(env, "SEGRELAY_STALE_RETENTION", defaults.stale_retention),
            max_memory_entries=_env_int(env, "SEGRELAY_MAX_MEMORY_ENTRIES", defaults.max_memory_entries),
            classifier_endpoint=_env_str(env, "SEGRELAY_CLASSIFIER_ENDPOINT", defaults.classifier_endpoint),
            classifier_token=_env_str(env, "SEGRELAY_CLASSIFIER_TOKEN", defaults.classifier_token),
            classifier_auth_header=_env_str(env, "SEGRELAY_CLASSIFIER_AUTH_HEADER", defaults.classifier_auth_header),
            classifier_namespace=_env_str(env, "SEGRELAY_CLASSIFIER_NAMESPACE", defaults.classifier_namespace),
            classifier_timeout=_env_float(env, "SEGRELAY_CLASSIFIER_TIMEOUT", defaults.classifier_timeout),
            mock_unauthenticated=_env_bool(env, "SEGRELAY_MOCK_UNAUTHENTICATED", defaults.mock_unauthenticated),
            origin_timeout=_env_float(env, "SEGRELAY_ORIGIN_TIMEOUT", defaults.origin_timeout),
            js_namespace=_env_str(env, "SEGRELAY_JS_NAMESPACE", defaults.js_namespace),
            cors_origin=_env_str(env, "SEGRELAY_CORS_ORIGIN", defaults.cors_origin),
            bot_header=_env_str(env, "SEGRELAY_BOT_HEADER", defaults.bot_header).lower(),
            db_path=_env_str(env, "SEGRELAY_DB_PATH", defaults.db_path),
            host=_env_str(env, "SEGRELAY_HOST", defaults.host),
            port=_env_int(env, "SEGRELAY_PORT", defaults.port),
            log_json=_env_bool(env, "SEGRELAY_LOG_JSON", defaults.log_json),
            log_level=_env_str(env, "SEGRELAY_LOG_LEVEL", defaults.log_level).upper(),
        )
