"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator

import pytest

from zenquery import (
    AsyncMemoryAdapter,
    QueryClient,
    QueryConfig,
    reset_default_client,
    set_default_client,
)
from zenquery import clock as clock_module


class FakeClock:
    """Manually advanced replacement for ``zenquery.clock.now_ms``."""

    def __init__(self, start: float = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class Feed:
    """Async stream of values pushed from a test."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()

    def push(self, value: object) -> None:
        self._queue.put_nowait(value)

    async def stream(self) -> AsyncIterator[object]:
        while True:
            yield await self._queue.get()


async def settle(rounds: int = 5) -> None:
    """Let pending callbacks and background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def storage() -> AsyncMemoryAdapter:
    """Create a fresh AsyncMemoryAdapter for each test."""
    return AsyncMemoryAdapter()


@pytest.fixture
async def client(storage: AsyncMemoryAdapter) -> AsyncIterator[QueryClient]:
    """A QueryClient installed as the default client, without retries."""
    query_client = QueryClient(
        default_options=QueryConfig(retry_count=0),
        storage=storage,
    )
    set_default_client(query_client)
    yield query_client
    reset_default_client()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Freeze engine time; advance it with ``fake_clock.advance(ms)``."""
    fake = FakeClock()
    monkeypatch.setattr(clock_module, "now_ms", fake)
    return fake


@pytest.fixture
def feed() -> Feed:
    """A pushable async stream for network and lifecycle events."""
    return Feed()
