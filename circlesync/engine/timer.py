"""
circlesync.engine.timer — Recompute-from-Epoch Countdown
=========================================================

Remaining time is never accumulated by decrementing a counter.  Every tick
recomputes it from the shared ``synchronized_start_epoch`` and the wall
clock, so scheduler jitter, a blocked event loop or a late join cannot
make peers drift apart::

    remaining = max(0, duration*60 - elapsed_before_pause - (now - epoch))

Two peers holding the same epoch and sampling Δ seconds apart disagree by
at most Δ (plus their clock offset), for the whole session.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable

from circlesync.engine.models import SessionState

logger = logging.getLogger(__name__)

__all__ = ["TimerPhase", "TimerEngine", "remaining_seconds"]


class TimerPhase(enum.StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


def remaining_seconds(state: SessionState, now: float) -> float:
    """Closed-form remaining time of *state* at wall-clock *now*.

    A local clock that lags the host's (``now < epoch``) counts as zero
    elapsed rather than extending the session.
    """
    left = state.duration_seconds - state.elapsed_before_pause
    if state.is_playing:
        left -= max(0.0, now - state.synchronized_start_epoch)
    return max(0.0, left)


class TimerEngine:
    """Countdown state machine driven by applied session snapshots.

    ``idle → running → {paused, completed}`` and ``paused → running``.
    A run is identified by its epoch, duration and pre-pause offset;
    ``on_complete`` callbacks fire once per run no matter how often the
    same snapshot is re-armed or ticked.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        tick_interval: float = 1.0,
    ) -> None:
        self._clock = clock
        self.tick_interval = tick_interval
        self._state = SessionState()
        self._phase = TimerPhase.IDLE
        self._run_key: tuple | None = None
        self._completed_run: tuple | None = None
        self._frozen_remaining: float | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._task: asyncio.Task | None = None

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    @property
    def phase(self) -> TimerPhase:
        return self._phase

    @property
    def frozen(self) -> bool:
        return self._frozen_remaining is not None

    def remaining(self, now: float | None = None) -> float:
        """Seconds left; the frozen value while the relay is lost."""
        if self._frozen_remaining is not None:
            return self._frozen_remaining
        return remaining_seconds(self._state, self._clock() if now is None else now)

    def progress(self, now: float | None = None) -> float:
        """Percentage of the session already elapsed (0..100)."""
        total = self._state.duration_seconds
        if total <= 0:
            return 0.0
        return (total - self.remaining(now)) / total * 100

    def on_complete(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def arm(self, state: SessionState) -> float:
        """Re-derive the phase from a freshly applied *state*.

        Arming with the run that is already active (duplicate snapshot,
        volume change) keeps the phase, including ``completed``.
        """
        self._state = state
        if state.is_playing:
            run_key = (
                state.synchronized_start_epoch,
                state.duration_minutes,
                state.elapsed_before_pause,
            )
            if run_key != self._run_key:
                self._run_key = run_key
                self._phase = TimerPhase.RUNNING
                logger.debug("Countdown running from epoch %.3f", state.synchronized_start_epoch)
        else:
            self._run_key = None
            self._phase = (
                TimerPhase.PAUSED if state.elapsed_before_pause > 0 else TimerPhase.IDLE
            )
        return self.tick()

    def tick(self, now: float | None = None) -> float:
        """Recompute remaining time and complete the run when it hits zero."""
        if self._frozen_remaining is not None:
            return self._frozen_remaining

        left = remaining_seconds(self._state, self._clock() if now is None else now)
        if (
            self._phase == TimerPhase.RUNNING
            and left <= 0
            and self._completed_run != self._run_key
        ):
            self._phase = TimerPhase.COMPLETED
            self._completed_run = self._run_key
            logger.info("Countdown completed")
            self._fire_complete()
        return left

    def freeze(self) -> None:
        """Hold the displayed value (relay lost).  Completion is deferred."""
        if self._frozen_remaining is None:
            self._frozen_remaining = self.remaining()

    def thaw(self) -> float:
        """Resume recomputing from the epoch; may fire a deferred completion."""
        self._frozen_remaining = None
        return self.tick()

    def _fire_complete(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("on_complete callback failed")

    # -------------------------------------------------------------------
    # Background ticking
    # -------------------------------------------------------------------
    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start the tick task.  A second call while running is a no-op."""
        if self._task is not None and not self._task.done():
            return
        loop = loop or asyncio.get_running_loop()

        async def _tick_loop() -> None:
            while True:
                await asyncio.sleep(self.tick_interval)
                try:
                    self.tick()
                except Exception:
                    logger.exception("Countdown tick error")

        self._task = loop.create_task(_tick_loop(), name="countdown-tick")

    def stop(self) -> None:
        """Cancel the tick task."""
        if self._task:
            self._task.cancel()
            self._task = None
