"""Shared test fixtures for pytest.

Provides book builders and a fake realtime socket used across test files.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Callable, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.types import NormalizedBook, NormalizedLevel  # noqa: E402

Levels = Sequence[tuple[float, float]]


def build_book(venue_id: str, bids: Levels = (), asks: Levels = (), timestamp: int = 1_700_000_000_000) -> NormalizedBook:
    return NormalizedBook(
        venue_id=venue_id,
        bids=tuple(NormalizedLevel(price=price, size=size) for price, size in sorted(bids, reverse=True)),
        asks=tuple(NormalizedLevel(price=price, size=size) for price, size in sorted(asks)),
        timestamp=timestamp,
    )


@pytest.fixture
def make_book() -> Callable[..., NormalizedBook]:
    """Factory for `NormalizedBook` from (price, size) pairs."""
    return build_book


@pytest.fixture
def two_venue_books() -> list[NormalizedBook]:
    """Polymarket and DFlow books around a 0.50 mid, not crossed."""
    return [
        build_book(
            "polymarket",
            bids=[(0.49, 100.0), (0.48, 200.0), (0.45, 50.0)],
            asks=[(0.51, 150.0), (0.52, 100.0), (0.55, 300.0)],
        ),
        build_book(
            "dflow",
            bids=[(0.49, 40.0), (0.47, 80.0)],
            asks=[(0.51, 60.0), (0.53, 90.0)],
        ),
    ]


class FakeSocket:
    """Stand-in for a `websockets` client connection.

    Messages pushed with `feed()` are yielded by async iteration; `end()`
    makes the iteration stop as if the server closed the socket.
    """

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "FakeSocket":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.closed = True
        return False

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, message: str) -> None:
        self._incoming.put_nowait(message)

    def end(self) -> None:
        self._incoming.put_nowait(None)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` on the running loop until it holds or `timeout` expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
