"""Shared fixtures for relay tests."""

from __future__ import annotations

import json
from typing import Any

import pytest

from iot_relay.config import load_default_config
from iot_relay.server import RelayServer


class FakeConnection:
    """In-memory connection handle recording every queued frame."""

    def __init__(self, is_open: bool = True, fail_sends: bool = False) -> None:
        self._open = is_open
        self.fail_sends = fail_sends
        self.sent: list[str] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        self._open = False

    def send(self, text: str) -> bool:
        if self.fail_sends:
            raise ConnectionResetError("peer went away")
        self.sent.append(text)
        return True

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(text) for text in self.sent]

    def frames_of(self, frame_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame["type"] == frame_type]


class TickClock:
    """Deterministic clock returning a new ISO timestamp on every call."""

    def __init__(self) -> None:
        self.ticks = 0

    def __call__(self) -> str:
        self.ticks += 1
        return f"2026-01-01T00:00:{self.ticks:02d}.000Z"

    @property
    def last(self) -> str:
        return f"2026-01-01T00:00:{self.ticks:02d}.000Z"


@pytest.fixture
def clock() -> TickClock:
    return TickClock()


@pytest.fixture
def server(clock: TickClock) -> RelayServer:
    """Create a RelayServer from the bundled defaults without starting it."""
    return RelayServer(config=load_default_config(), clock=clock)


@pytest.fixture
def connection_factory():
    def _make(**kwargs: Any) -> FakeConnection:
        return FakeConnection(**kwargs)

    return _make
