# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import segrelay  # noqa: F401
except ImportError:
    raise ImportError("segrelay is not installed. Run: pip install -e '.[dev]'") from None

import httpx
import pytest

from segrelay.store import InMemoryStore
from tests._helpers import FakeClock, FakeOrigin


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryStore:
    return InMemoryStore(max_entries=100, clock=clock)


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
async def http_client(origin):
    async with httpx.AsyncClient(transport=httpx.MockTransport(origin)) as client:
        yield client
