"""
circlesync.engine.state — Mutation Rules & Snapshot Store
==========================================================

Two halves:

* :func:`apply_mutation` — the pure rules for turning one host action into
  the next :class:`SessionState`.  It owns the epoch stamping: a fresh
  ``synchronized_start_epoch`` on every transition into playing, cleared on
  every transition out of it.
* :class:`StateStore` — holds the currently applied snapshot and enforces
  the freshness rule: a snapshot older than the applied one is discarded.
  Because snapshots are whole states (never deltas), re-applying or
  receiving duplicates is harmless.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from circlesync.constants import VOLUME_MAX, VOLUME_MIN
from circlesync.engine.errors import InvalidMutation, StaleState
from circlesync.engine.models import (
    Mutation,
    MutationKind,
    SessionState,
    StateSnapshot,
    parse_practice,
)

logger = logging.getLogger(__name__)

__all__ = ["apply_mutation", "StateStore"]


# ---------------------------------------------------------------------------
# Mutation rules
# ---------------------------------------------------------------------------
def apply_mutation(state: SessionState, mutation: Mutation, now: float) -> SessionState:
    """Return the state after *mutation* is applied at wall-clock *now*.

    Returns *state* itself when the mutation changes nothing (e.g. ``play``
    while already playing).

    Raises
    ------
    InvalidMutation
        If the mutation breaks a state invariant (changing the practice or
        duration while playing, volume out of range, non-positive duration).
    """
    kind = mutation.kind

    if kind == MutationKind.PLAY:
        if state.is_playing:
            return state
        return replace(state, is_playing=True, synchronized_start_epoch=now)

    if kind == MutationKind.PAUSE:
        if not state.is_playing:
            return state
        ran = max(0.0, now - state.synchronized_start_epoch)
        elapsed = min(state.duration_seconds, state.elapsed_before_pause + ran)
        return replace(
            state,
            is_playing=False,
            synchronized_start_epoch=None,
            elapsed_before_pause=elapsed,
        )

    if kind == MutationKind.STOP:
        if not state.is_playing and state.elapsed_before_pause == 0:
            return state
        return replace(
            state,
            is_playing=False,
            synchronized_start_epoch=None,
            elapsed_before_pause=0.0,
        )

    if kind == MutationKind.SET_VOLUME:
        volume = mutation.value
        if isinstance(volume, bool) or not isinstance(volume, int | float):
            raise InvalidMutation(f"Volume must be a number, got {volume!r}")
        if isinstance(volume, float) and not volume.is_integer():
            raise InvalidMutation(f"Volume must be a whole number, got {volume!r}")
        if not VOLUME_MIN <= volume <= VOLUME_MAX:
            raise InvalidMutation(
                f"Volume must be within {VOLUME_MIN}..{VOLUME_MAX}, got {volume}"
            )
        return replace(state, volume=int(volume))

    if kind == MutationKind.SET_PRACTICE:
        if state.is_playing:
            raise InvalidMutation("Practice cannot change while the session is playing")
        return replace(state, practice_kind=parse_practice(mutation.value))

    if kind == MutationKind.SET_DURATION:
        if state.is_playing:
            raise InvalidMutation("Duration cannot change while the session is playing")
        minutes = mutation.value
        if isinstance(minutes, bool) or not isinstance(minutes, int | float) or minutes <= 0:
            raise InvalidMutation(f"Duration must be a positive number, got {minutes!r}")
        return replace(state, duration_minutes=minutes)

    if kind == MutationKind.SET_BACKGROUND_AUDIO:
        ref = mutation.value
        return replace(state, background_audio_ref=str(ref) if ref is not None else None)

    raise InvalidMutation(f"Unknown mutation kind: {kind!r}")


# ---------------------------------------------------------------------------
# Snapshot store
# ---------------------------------------------------------------------------
class StateStore:
    """Single current snapshot per session; replace-whole on apply.

    The store is versionless in the sense that nobody merges fields: the
    newest snapshot (by ``order_key``) simply wins.
    """

    def __init__(self, initial: SessionState | None = None) -> None:
        self._initial = initial or SessionState()
        self._snapshot: StateSnapshot | None = None

    @property
    def current(self) -> SessionState:
        if self._snapshot is None:
            return self._initial
        return self._snapshot.state

    @property
    def snapshot(self) -> StateSnapshot | None:
        """The last applied snapshot, or None before the first write."""
        return self._snapshot

    def build(self, mutation: Mutation, issuer_id: str, now: float) -> StateSnapshot | None:
        """Stamp the next snapshot for *mutation* without applying it.

        ``issued_at`` never goes backwards relative to the applied snapshot,
        so a new host with a lagging clock still produces the freshest
        write.  Returns None if the mutation is a no-op.
        """
        state = self.current
        new_state = apply_mutation(state, mutation, now)
        if new_state is state:
            return None

        if self._snapshot is None:
            return StateSnapshot(new_state, issued_at=now, sequence=1, issuer_id=issuer_id)
        return StateSnapshot(
            new_state,
            issued_at=max(now, self._snapshot.issued_at),
            sequence=self._snapshot.sequence + 1,
            issuer_id=issuer_id,
        )

    def apply(self, snapshot: StateSnapshot) -> bool:
        """Replace the current state with *snapshot*.

        Returns True if the state was replaced, False for an exact duplicate
        of the applied snapshot.

        Raises
        ------
        StaleState
            If *snapshot* is older than the applied one.
        """
        if self._snapshot is not None:
            if snapshot.order_key == self._snapshot.order_key:
                return False
            if snapshot.order_key < self._snapshot.order_key:
                raise StaleState(
                    f"Snapshot {snapshot.order_key} is older than applied "
                    f"{self._snapshot.order_key}"
                )
        self._snapshot = snapshot
        return True

    def reset(self, snapshot: StateSnapshot | None) -> None:
        """Force *snapshot* as current, bypassing the freshness rule.

        Only for rolling back local writes that never reached the relay.
        """
        self._snapshot = snapshot
