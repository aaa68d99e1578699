# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Classification requests and their cache fingerprints.

``ClientContext`` is extracted once from inbound headers (user agent,
edge-provided device/geo hints, identity cookies, bot signal).
``ClassificationRequest`` ties it to a target URL and the document's
current validators, and renders the upstream wire body.

``build_key`` is the segment-cache fingerprint: volatile inputs are
replaced by coarse derived fields before hashing, so the key is stable
across user-agent version churn but changes with URL, validators, coarse
geo/device and identity.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlsplit

from .device import DeviceInfo, classify_user_agent
from .document_cache import Validators

DEFAULT_COUNTRY = "US"
PAGE_IMPRESSION_ID = "1"

# First-party / third-party identity cookies → eid source
IDENTITY_COOKIES: dict[str, str] = {
    "_pubcid": "pubcid.org",
    "_sharedid": "sharedid.org",
    "id5id": "id5-sync.com",
    "__uid2_advertising_token": "uidapi.com",
}

_MAX_IDENTITY_VALUE = 512

# Edge-provided geo hints, most specific header first
_GEO_HEADERS: dict[str, tuple[str, ...]] = {
    "country": ("x-geo-country", "cf-ipcountry"),
    "region": ("x-geo-region", "cf-region"),
    "city": ("x-geo-city", "cf-ipcity"),
    "postal_code": ("x-geo-postal-code", "cf-postal-code"),
    "timezone": ("x-geo-timezone", "cf-timezone"),
}
_DEVICE_HINT_HEADERS = ("x-device-type", "cf-device-type")
_TRUTHY = frozenset({"1", "true", "yes", "verified"})


# ---------------------------------------------------------------------------
# Inbound context
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GeoInfo:
    country: str = DEFAULT_COUNTRY
    region: str = ""
    city: str = ""
    postal_code: str = ""
    timezone: str = ""

    def to_wire(self) -> dict[str, str]:
        geo = {"country": self.country}
        if self.region:
            geo["region"] = self.region
        if self.city:
            geo["city"] = self.city
        if self.postal_code:
            geo["zip"] = self.postal_code
        if self.timezone:
            geo["utcoffset"] = self.timezone
        return geo


@dataclass(frozen=True, slots=True, order=True)
class IdentityToken:
    """A user identifier from one identity provider."""

    source: str
    id: str


def _header(headers: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = headers.get(name)
        if value:
            return value.strip()
    return ""


def parse_cookie_header(raw: str) -> dict[str, str]:
    """Lenient Cookie header parser — malformed pairs are skipped, first value wins."""
    cookies: dict[str, str] = {}
    for chunk in raw.split(";"):
        name, sep, value = chunk.partition("=")
        name = name.strip()
        if not sep or not name or name in cookies:
            continue
        cookies[name] = unquote(value.strip().strip('"'))
    return cookies


def identity_tokens_from_cookies(cookies: Mapping[str, str]) -> tuple[IdentityToken, ...]:
    tokens = []
    for cookie_name, source in IDENTITY_COOKIES.items():
        value = cookies.get(cookie_name, "")
        if value and len(value) <= _MAX_IDENTITY_VALUE:
            tokens.append(IdentityToken(source=source, id=value))
    return tuple(tokens)


@dataclass(frozen=True, slots=True)
class ClientContext:
    """Request-shaping features taken from the inbound request."""

    user_agent: str = ""
    device_hint: str = ""
    geo: GeoInfo = field(default_factory=GeoInfo)
    identities: tuple[IdentityToken, ...] = ()
    is_bot: bool = False

    @property
    def device(self) -> DeviceInfo:
        return classify_user_agent(self.user_agent, self.device_hint)

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], *, bot_header: str = "x-verified-bot") -> ClientContext:
        """Build a context from (case-insensitive) inbound headers."""
        geo = GeoInfo(
            country=_header(headers, *_GEO_HEADERS["country"]).upper() or DEFAULT_COUNTRY,
            region=_header(headers, *_GEO_HEADERS["region"]),
            city=_header(headers, *_GEO_HEADERS["city"]),
            postal_code=_header(headers, *_GEO_HEADERS["postal_code"]),
            timezone=_header(headers, *_GEO_HEADERS["timezone"]),
        )
        cookies = parse_cookie_header(headers.get("cookie", ""))
        return cls(
            user_agent=headers.get("user-agent", ""),
            device_hint=_header(headers, *_DEVICE_HINT_HEADERS),
            geo=geo,
            identities=identity_tokens_from_cookies(cookies),
            is_bot=headers.get(bot_header, "").strip().lower() in _TRUTHY,
        )


# ---------------------------------------------------------------------------
# Classification request
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationRequest:
    """Normalized snapshot of everything the classifier is asked about."""

    url: str
    validators: Validators = field(default_factory=Validators)
    context: ClientContext = field(default_factory=ClientContext)
    impression_ids: tuple[str, ...] = (PAGE_IMPRESSION_ID,)

    @property
    def domain(self) -> str:
        return (urlsplit(self.url).hostname or "").lower()

    def to_wire(self) -> dict[str, Any]:
        """OpenRTB-shaped request body for the classification service."""
        device = self.context.device
        body: dict[str, Any] = {
            "site": {
                "domain": self.domain,
                "page": self.url,
                "ext": {
                    "etag": self.validators.etag or "",
                    "last_modified": self.validators.last_modified or "",
                },
            },
            "imp": [{"id": imp_id} for imp_id in self.impression_ids],
            "device": {
                "devicetype": device.device_class.openrtb_type,
                "ua": self.context.user_agent,
                "os": device.os_family,
                "geo": self.context.geo.to_wire(),
            },
        }
        if self.context.identities:
            by_source: dict[str, list[dict[str, str]]] = {}
            for token in self.context.identities:
                by_source.setdefault(token.source, []).append({"id": token.id})
            body["user"] = {"ext": {"eids": [{"source": s, "uids": uids} for s, uids in by_source.items()]}}
        return body


def _normalized(request: ClassificationRequest) -> dict[str, Any]:
    device = request.context.device
    identities = sorted({(t.source, t.id) for t in request.context.identities})
    return {
        "url": request.url,
        "validators": [request.validators.etag or "", request.validators.last_modified or ""],
        "device": [device.browser_family, device.os_family, device.device_class.value],
        "geo": [request.context.geo.country, request.context.geo.region],
        "ids": [list(pair) for pair in identities],
        "imp": sorted(set(request.impression_ids)),
    }


def build_key(request: ClassificationRequest) -> str:
    """Deterministic SHA-256 fingerprint of the normalized request (64 hex chars)."""
    canonical = json.dumps(_normalized(request), sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
