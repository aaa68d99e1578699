# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Coarse device classification from a User-Agent string.

Parsing is done by ``ua-parser`` (the uap-core regex corpus); this module
only projects its result onto low-cardinality fields (browser family, OS
family, device class). Version numbers and build strings are dropped so
the result is usable inside a cache fingerprint.
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from enum import StrEnum

import ua_parser


class DeviceClass(StrEnum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    CTV = "ctv"

    @property
    def openrtb_type(self) -> int:
        """OpenRTB 2.x ``device.devicetype`` code."""
        return _OPENRTB_DEVICE_TYPES[self]


_OPENRTB_DEVICE_TYPES = {
    DeviceClass.MOBILE: 1,
    DeviceClass.DESKTOP: 2,
    DeviceClass.CTV: 3,
    DeviceClass.TABLET: 5,
}

# uap family (lowercased) keyword → coarse browser family, first match wins
_BROWSER_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("edge", "edge"),
    ("opera", "opera"),
    ("samsung", "samsung"),
    ("chrom", "chrome"),
    ("firefox", "firefox"),
    ("safari", "safari"),
)
_IE_FAMILIES = frozenset({"ie", "ie mobile"})

_OS_FAMILIES = {
    "windows": "windows",
    "ios": "ios",
    "ipados": "ios",
    "android": "android",
    "chrome os": "chromeos",
    "mac os x": "macos",
    "macos": "macos",
    "linux": "linux",
    "ubuntu": "linux",
    "debian": "linux",
    "fedora": "linux",
}

_CTV_OS_FAMILIES = frozenset({"roku", "tizen", "webos", "tvos", "fire os", "android tv", "chromecast"})
_CTV_DEVICE_FAMILIES = frozenset({"appletv", "chromecast", "roku"})
_TABLET_DEVICE_FAMILIES = frozenset({"ipad", "kindle", "generic tablet"})
_MOBILE_DEVICE_FAMILIES = frozenset({"iphone", "ipod", "generic smartphone", "generic feature phone"})
_MOBILE_OS_FAMILIES = frozenset({"ios", "android", "windows phone", "blackberry os", "kaios"})

# TV markers uap-core leaves in the device model or drops entirely
_CTV_RE = re.compile(
    r"SmartTV|SMART-TV|\bAndroid TV\b|\bGoogle ?TV\b|\bSHIELD\b|\bBRAVIA\b|\bAFT[A-Z]|\bCrKey\b"
    r"|AppleTV|\btvOS\b|HbbTV|\bTizen\b|\bWeb0?S\b|\bRoku\b",
    re.IGNORECASE,
)
_TABLET_RE = re.compile(r"\bTablet\b|\bSilk/")

# Values accepted from an upstream device-type hint header (e.g. CF-Device-Type)
_HINT_CLASSES = {
    "mobile": DeviceClass.MOBILE,
    "tablet": DeviceClass.TABLET,
    "desktop": DeviceClass.DESKTOP,
    "tv": DeviceClass.CTV,
    "ctv": DeviceClass.CTV,
}


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    """Coarse, fingerprint-safe view of a user agent."""

    browser_family: str = "other"
    os_family: str = "other"
    device_class: DeviceClass = DeviceClass.DESKTOP


def _browser_family(family: str) -> str:
    lowered = family.lower()
    if lowered in _IE_FAMILIES:
        return "ie"
    for keyword, name in _BROWSER_KEYWORDS:
        if keyword in lowered:
            return name
    return "other"


def _os_family(family: str) -> str:
    lowered = family.lower()
    if lowered.startswith("windows") and lowered != "windows phone":
        return "windows"
    return _OS_FAMILIES.get(lowered, "other")


def _device_class(ua: str, os_family: str, device_family: str) -> DeviceClass:
    os_lowered = os_family.lower()
    device_lowered = device_family.lower()
    if os_lowered in _CTV_OS_FAMILIES or device_lowered in _CTV_DEVICE_FAMILIES or _CTV_RE.search(ua):
        return DeviceClass.CTV
    if device_lowered in _TABLET_DEVICE_FAMILIES or _TABLET_RE.search(ua):
        return DeviceClass.TABLET
    # Android phones carry "Mobile"; Android tablets omit it
    if os_lowered == "android":
        return DeviceClass.MOBILE if "Mobile" in ua else DeviceClass.TABLET
    if device_lowered in _MOBILE_DEVICE_FAMILIES or os_lowered in _MOBILE_OS_FAMILIES:
        return DeviceClass.MOBILE
    return DeviceClass.DESKTOP


@functools.lru_cache(maxsize=1024)
def _parse(ua: str) -> tuple[str, str, DeviceClass]:
    result = ua_parser.parse(ua)
    browser = result.user_agent.family if result.user_agent else "Other"
    os_family = result.os.family if result.os else "Other"
    device = result.device.family if result.device else "Other"
    return _browser_family(browser), _os_family(os_family), _device_class(ua, os_family, device)


def classify_user_agent(user_agent: str, device_hint: str = "") -> DeviceInfo:
    """Derive browser family, OS family and device class.

    A recognized *device_hint* (edge-provided device type) overrides the
    UA-derived device class.
    """
    browser, os_family, device_class = _parse(user_agent or "")

    hinted = _HINT_CLASSES.get(device_hint.strip().lower())
    if hinted is not None:
        device_class = hinted

    return DeviceInfo(browser_family=browser, os_family=os_family, device_class=device_class)
