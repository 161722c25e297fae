"""Shared fixtures: deterministic clock + temp SQLite store."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from schedbot.core.clock import Clock
from schedbot.memory.store import TaskStore

# Monday 2026-01-05 08:00:00 UTC
START_MS = int(datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc).timestamp() * 1000)


def utc_ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


class FakeClock(Clock):
    """Manual clock; ``sleep`` advances time instantly."""

    def __init__(self, now_ms: int = START_MS):
        self.now = now_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> int:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += int(seconds * 1000)

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    return TaskStore(str(tmp_path / "test.db"), clock=clock)
