"""
tests/test_timer.py — Countdown Engine Unit Tests
==================================================

Covers the closed-form remaining-time formula, the no-drift property over
a 30-minute session, exactly-once completion, and the relay-lost freeze.
"""

from __future__ import annotations

import asyncio
import random

import pytest
from conftest import T0, FakeClock, run_async

from circlesync.engine.models import Mutation, SessionState
from circlesync.engine.state import apply_mutation
from circlesync.engine.timer import TimerEngine, TimerPhase, remaining_seconds


def _playing(epoch: float = T0, minutes: float = 10, **kwargs) -> SessionState:
    return SessionState(
        is_playing=True, synchronized_start_epoch=epoch, duration_minutes=minutes, **kwargs,
    )


class TestRemainingSeconds:
    def test_idle_shows_full_duration(self):
        assert remaining_seconds(SessionState(duration_minutes=10), now=T0) == 600

    def test_playing_counts_down_from_epoch(self):
        assert remaining_seconds(_playing(), now=T0 + 0.2) == pytest.approx(599.8)

    def test_never_negative(self):
        assert remaining_seconds(_playing(minutes=1), now=T0 + 3600) == 0

    def test_paused_shows_last_value(self):
        state = SessionState(duration_minutes=10, elapsed_before_pause=90)
        assert remaining_seconds(state, now=T0 + 10_000) == 510

    def test_lagging_local_clock_does_not_extend_session(self):
        assert remaining_seconds(_playing(), now=T0 - 5) == 600


class TestNoDrift:
    def test_thirty_minute_session_matches_closed_form(self):
        """1800 jittery one-second ticks never accumulate error."""
        clock = FakeClock()
        timer = TimerEngine(clock=clock)
        state = _playing(epoch=clock.now, minutes=30)
        timer.arm(state)
        jitter = random.Random(1234)

        for _ in range(1800):
            clock.advance(1.0 + jitter.uniform(-0.08, 0.08))
            value = timer.tick()
            expected = max(0.0, 30 * 60 - (clock.now - state.synchronized_start_epoch))
            assert value == pytest.approx(expected, abs=1e-6)

    def test_peers_sampling_delta_apart_differ_by_delta(self):
        clock_a, clock_b = FakeClock(), FakeClock()
        state = _playing(epoch=T0, minutes=30)
        a = TimerEngine(clock=clock_a)
        b = TimerEngine(clock=clock_b)
        a.arm(state)
        b.arm(state)

        for step in range(1, 1801):
            clock_a.now = T0 + step
            clock_b.now = T0 + step + 0.25
            assert abs(a.tick() - b.tick()) <= 0.25 + 1e-9

    def test_reapplying_same_snapshot_leaves_remaining_unchanged(self, clock):
        timer = TimerEngine(clock=clock)
        state = _playing(epoch=clock.now)
        timer.arm(state)
        clock.advance(42)
        before = timer.remaining()
        timer.arm(state)
        assert timer.remaining() == before


class TestPhases:
    def test_initial_phase_idle(self, clock):
        assert TimerEngine(clock=clock).phase == TimerPhase.IDLE

    def test_arm_transitions(self, clock):
        timer = TimerEngine(clock=clock)
        playing = _playing(epoch=clock.now)
        timer.arm(playing)
        assert timer.phase == TimerPhase.RUNNING

        clock.advance(30)
        paused = apply_mutation(playing, Mutation.pause(), clock.now)
        timer.arm(paused)
        assert timer.phase == TimerPhase.PAUSED
        assert timer.remaining() == pytest.approx(570)

        clock.advance(1000)
        resumed = apply_mutation(paused, Mutation.play(), clock.now)
        timer.arm(resumed)
        assert timer.phase == TimerPhase.RUNNING
        assert timer.remaining() == pytest.approx(570)

        timer.arm(apply_mutation(resumed, Mutation.stop(), clock.now))
        assert timer.phase == TimerPhase.IDLE
        assert timer.remaining() == 600

    def test_progress_percentage(self, clock):
        timer = TimerEngine(clock=clock)
        timer.arm(_playing(epoch=clock.now, minutes=10))
        clock.advance(150)
        assert timer.progress() == pytest.approx(25)


class TestCompletion:
    def _timer(self, clock):
        timer = TimerEngine(clock=clock)
        fired = []
        timer.on_complete(lambda: fired.append(clock.now))
        return timer, fired

    def test_fires_once_when_remaining_hits_zero(self, clock):
        timer, fired = self._timer(clock)
        timer.arm(_playing(epoch=clock.now, minutes=1))
        clock.advance(59)
        timer.tick()
        assert fired == []

        clock.advance(1)
        for _ in range(5):
            timer.tick()
            clock.advance(1)
        assert len(fired) == 1
        assert timer.phase == TimerPhase.COMPLETED

    def test_duplicate_arm_after_completion_does_not_refire(self, clock):
        timer, fired = self._timer(clock)
        state = _playing(epoch=clock.now, minutes=1)
        timer.arm(state)
        clock.advance(61)
        timer.tick()
        timer.arm(state)
        timer.arm(state)
        assert len(fired) == 1
        assert timer.phase == TimerPhase.COMPLETED

    def test_volume_change_does_not_restart_run(self, clock):
        timer, fired = self._timer(clock)
        state = _playing(epoch=clock.now, minutes=1)
        timer.arm(state)
        clock.advance(61)
        timer.tick()
        timer.arm(apply_mutation(state, Mutation.set_volume(10), clock.now))
        assert len(fired) == 1

    def test_rapid_pause_resume_fires_once_per_run(self, clock):
        timer, fired = self._timer(clock)
        state = _playing(epoch=clock.now, minutes=1)
        timer.arm(state)
        for _ in range(10):
            clock.advance(2)
            state = apply_mutation(state, Mutation.pause(), clock.now)
            timer.arm(state)
            clock.advance(0.1)
            state = apply_mutation(state, Mutation.play(), clock.now)
            timer.arm(state)
        assert fired == []

        clock.advance(60)
        timer.tick()
        timer.tick()
        assert len(fired) == 1

    def test_new_run_after_stop_completes_again(self, clock):
        timer, fired = self._timer(clock)
        state = _playing(epoch=clock.now, minutes=1)
        timer.arm(state)
        clock.advance(61)
        timer.tick()

        state = apply_mutation(state, Mutation.stop(), clock.now)
        timer.arm(state)
        clock.advance(1)
        timer.arm(apply_mutation(state, Mutation.play(), clock.now))
        clock.advance(61)
        timer.tick()
        assert len(fired) == 2

    def test_failing_callback_does_not_stop_others(self, clock):
        timer = TimerEngine(clock=clock)
        seen = []

        def _boom():
            raise RuntimeError("ui crashed")

        timer.on_complete(_boom)
        timer.on_complete(lambda: seen.append(True))
        timer.arm(_playing(epoch=clock.now, minutes=1))
        clock.advance(61)
        timer.tick()
        assert seen == [True]


class TestFreeze:
    def test_frozen_display_holds_value(self, clock):
        timer = TimerEngine(clock=clock)
        timer.arm(_playing(epoch=clock.now))
        clock.advance(100)
        timer.freeze()
        clock.advance(50)
        assert timer.frozen
        assert timer.remaining() == pytest.approx(500)
        assert timer.tick() == pytest.approx(500)

    def test_thaw_recomputes_from_epoch(self, clock):
        timer = TimerEngine(clock=clock)
        timer.arm(_playing(epoch=clock.now))
        timer.freeze()
        clock.advance(120)
        assert timer.thaw() == pytest.approx(480)
        assert not timer.frozen

    def test_completion_during_freeze_fires_on_thaw(self, clock):
        timer = TimerEngine(clock=clock)
        fired = []
        timer.on_complete(lambda: fired.append(True))
        timer.arm(_playing(epoch=clock.now, minutes=1))
        timer.freeze()
        clock.advance(90)
        timer.tick()
        assert fired == []
        timer.thaw()
        assert fired == [True]


class TestTickTask:
    def test_start_twice_keeps_single_task(self, clock):
        async def scenario():
            timer = TimerEngine(clock=clock, tick_interval=0.01)
            timer.start()
            first = timer._task
            timer.start()
            assert timer._task is first
            timer.stop()
            assert timer._task is None
            await asyncio.sleep(0)
            assert first.cancelled() or first.done()

        run_async(scenario())

    def test_background_ticks_complete_run(self, clock):
        async def scenario():
            timer = TimerEngine(clock=clock, tick_interval=0.005)
            fired = []
            timer.on_complete(lambda: fired.append(True))
            timer.arm(_playing(epoch=clock.now, minutes=1))
            timer.start()
            clock.advance(61)
            for _ in range(50):
                if fired:
                    break
                await asyncio.sleep(0.005)
            timer.stop()
            await asyncio.sleep(0)
            return fired

        assert run_async(scenario()) == [True]
