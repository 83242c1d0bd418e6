"""pytest configuration and shared fakes for RDM agent tests."""

from __future__ import annotations

import asyncio
import json

import pytest


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeWS:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self.close_args: tuple | None = None
        self.fail_sends = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, message) -> None:
        """Queue an inbound frame (dict → JSON text, str/bytes as-is)."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self, error: Exception | None = None) -> None:
        """Simulate the server closing (or breaking) the connection."""
        self._inbox.put_nowait(error)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    async def send(self, frame: str) -> None:
        if self.closed or self.fail_sends:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(frame))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_args = (code, reason)
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Replays a script of connection outcomes: exceptions or FakeWS objects.

    Once the script is exhausted every further attempt gets a fresh FakeWS.
    """

    def __init__(self, outcomes: list | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeWS] = []

    async def __call__(self, url: str, **kwargs):
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else FakeWS()
        if isinstance(outcome, Exception):
            raise outcome
        self.sockets.append(outcome)
        return outcome


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until true, or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def helpers():
    """Expose the fakes to test modules without making tests a package."""

    class _Helpers:
        FakeWS = FakeWS
        FakeConnector = FakeConnector
        wait_until = staticmethod(wait_until)

    return _Helpers
