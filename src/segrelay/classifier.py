# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Classification service client — a pure I/O boundary.

``classify(request, deadline)`` never raises and never caches:

- deadline exceeded, transport error, non-2xx, malformed JSON or an
  unknown response shape → ``{"global": []}`` (logged)
- success → per-slot labels parsed from ``data[].imp[].ext.<ns>.segments``

The deadline is the classifier's own budget, independent of the inbound
request: segments are enrichment, the document is the contract.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from . import GLOBAL_SLOT, Segments, empty_segments
from .config import RelayConfig
from .errors import ClassificationError
from .fingerprint import PAGE_IMPRESSION_ID, ClassificationRequest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1.0


# ---------------------------------------------------------------------------
# Response schema (lenient: unknown fields ignored, bad shapes rejected)
# ---------------------------------------------------------------------------


class SegmentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int


class NamespacedExt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    segments: list[SegmentRef] = []


class Impression(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int | None = None
    tagid: str | int | None = None
    ext: dict[str, Any] = {}


class Destination(BaseModel):
    model_config = ConfigDict(extra="ignore")

    destination: str = ""
    imp: list[Impression] = []


class ClassificationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[Destination] = []


def parse_segments(
    payload: Any,
    *,
    namespace: str = "scope3",
    page_impression_id: str = PAGE_IMPRESSION_ID,
) -> Segments:
    """Extract per-slot labels from a classification response body.

    Slot id is ``tagid``, else ``id``; the untagged page-level impression
    feeds the global slot. Labels from several destinations are merged per
    slot in first-seen order without duplicates.
    """
    try:
        response = ClassificationResponse.model_validate(payload)
    except ValidationError as e:
        logger.warning("Unrecognized classification response shape (%d errors)", e.error_count())
        return empty_segments()

    segments = empty_segments()
    for destination in response.data:
        for imp in destination.imp:
            raw_ext = imp.ext.get(namespace)
            if raw_ext is None:
                continue
            try:
                ext = NamespacedExt.model_validate(raw_ext)
            except ValidationError:
                logger.debug("Skipping impression %s with malformed %s ext", imp.id, namespace)
                continue
            if imp.tagid is not None and str(imp.tagid):
                slot = str(imp.tagid)
            elif imp.id is not None:
                slot = str(imp.id)
                if slot == page_impression_id:
                    slot = GLOBAL_SLOT
            else:
                continue
            bucket = segments.setdefault(slot, [])
            for ref in ext.segments:
                label = str(ref.id)
                if label not in bucket:
                    bucket.append(label)
    return segments


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------


@runtime_checkable
class Classifier(Protocol):
    """Anything that turns a classification request into segments without raising."""

    async def classify(self, request: ClassificationRequest, deadline: float | None = None) -> Segments: ...


class ClassificationClient:
    """HTTP client for the classification service."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint: str,
        token: str = "",
        auth_header: str = "x-scope3-auth",
        namespace: str = "scope3",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._token = token
        self._auth_header = auth_header
        self._namespace = namespace
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json", "accept": "application/json"}
        if self._token:
            headers[self._auth_header] = self._token
        return headers

    async def fetch_payload(self, request: ClassificationRequest, budget: float) -> Any:
        """POST *request* and return the decoded JSON body.

        Raises ``ClassificationError`` on deadline, transport failure,
        non-2xx status or a body that is not JSON.
        """
        started = time.monotonic()
        try:
            async with asyncio.timeout(budget):
                response = await self._client.post(
                    self._endpoint,
                    json=request.to_wire(),
                    headers=self._headers(),
                    timeout=budget,
                )
        except TimeoutError as e:
            raise ClassificationError(f"timed out after {budget * 1000:.0f}ms", timed_out=True) from e
        except httpx.TimeoutException as e:
            raise ClassificationError(f"transport timeout: {e!r}", timed_out=True) from e
        except httpx.HTTPError as e:
            raise ClassificationError(f"request failed: {e!r}") from e

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info("Classification call %s -> %d (%.0fms)", request.url, response.status_code, elapsed_ms)

        if not response.is_success:
            raise ClassificationError(f"service returned {response.status_code}", status=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ClassificationError("response is not JSON", status=response.status_code) from e

    async def classify(self, request: ClassificationRequest, deadline: float | None = None) -> Segments:
        budget = deadline if deadline is not None else self._timeout
        try:
            payload = await self.fetch_payload(request, budget)
        except ClassificationError as e:
            logger.warning("Classification failed for %s, continuing without segments: %s", request.url, e)
            return empty_segments()

        segments = parse_segments(payload, namespace=self._namespace)
        logger.debug("Structured segments for %s: %s", request.url, segments)
        return segments


# URL keyword → labels, first match wins
_MOCK_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("people.com",), ("entertainment", "celebrity_news", "premium_content", "news_publisher")),
    (("example.com",), ("example_domain", "test_content", "generic_web")),
    (("news", "article"), ("news", "current_events", "article")),
    (("shop", "product"), ("product", "shopping", "commercial")),
)
_MOCK_DEFAULT = ("general_content", "web_page")


class MockClassifier:
    """Deterministic stand-in used when no classifier token is configured."""

    def __init__(self) -> None:
        self.calls = 0

    async def classify(self, request: ClassificationRequest, deadline: float | None = None) -> Segments:
        self.calls += 1
        url = request.url.lower()
        labels = _MOCK_DEFAULT
        for keywords, rule_labels in _MOCK_RULES:
            if any(k in url for k in keywords):
                labels = rule_labels
                break
        logger.debug("Mock segments for %s: %s", request.url, labels)
        return {GLOBAL_SLOT: list(labels)}


def build_classifier(config: RelayConfig, client: httpx.AsyncClient) -> Classifier:
    """Real client when a token is configured (or mocking is off), else ``MockClassifier``."""
    if not config.has_classifier_token and config.mock_unauthenticated:
        logger.info("No classifier token configured — using mock segments")
        return MockClassifier()
    return ClassificationClient(
        client,
        endpoint=config.classifier_endpoint,
        token=config.classifier_token,
        auth_header=config.classifier_auth_header,
        namespace=config.classifier_namespace,
        timeout=config.classifier_timeout,
    )
