"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio

import pytest

from circlesync.config import SyncConfig
from circlesync.engine.models import Participant

# Loops that would fire on their own (heartbeat, countdown tick) are pushed
# far out so tests drive them explicitly; reconnect backoff stays tiny.
FAST_CFG = SyncConfig(
    heartbeat_interval_seconds=3600,
    presence_grace_intervals=3,
    tick_interval_seconds=3600,
    reconnect_base_backoff_seconds=0.001,
    reconnect_max_backoff_seconds=0.005,
)

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock (epoch seconds)."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def run_async(coro):
    """Run an async coroutine in a fresh event loop (no pytest-asyncio)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def settle(rounds: int = 30) -> None:
    """Let queued relay messages reach every receive loop."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_participant(pid: str, joined_at: float, **kwargs) -> Participant:
    return Participant(id=pid, joined_at=joined_at, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
