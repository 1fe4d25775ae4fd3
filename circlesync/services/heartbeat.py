"""
circlesync.services.heartbeat — Periodic Presence Re-announcement
==================================================================

Re-tracks the local participant every ``interval`` seconds so peers can
tell "connected but idle" from "silently dropped".  Every participant
beats, not just the host: any silent drop must eventually shrink the
roster and trigger a re-election.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class Heartbeat:
    """Runs ``beat()`` on a fixed cadence as a single background task.

    A failing beat is logged and the next one still runs; the relay may be
    momentarily unreachable and the receive loop handles reconnecting.
    """

    def __init__(self, interval: float, beat: Callable[[], Awaitable[None]]) -> None:
        self.interval = interval
        self._beat = beat
        self._task: asyncio.Task | None = None
        self.beats = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def beat_once(self) -> None:
        """Run one beat now, outside the regular cadence."""
        try:
            await self._beat()
            self.beats += 1
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Heartbeat failed")

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start the heartbeat task.  A second call while running is a no-op."""
        if self.running:
            return
        loop = loop or asyncio.get_running_loop()

        async def _beat_loop() -> None:
            while True:
                await asyncio.sleep(self.interval)
                await self.beat_once()

        self._task = loop.create_task(_beat_loop(), name="presence-heartbeat")

    def stop(self) -> None:
        """Cancel the heartbeat task."""
        if self._task:
            self._task.cancel()
            self._task = None
