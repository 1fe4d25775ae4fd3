"""
circlesync.engine.models — Session Value Types
===============================================

Plain frozen dataclasses shared by every component.  Nothing here talks to
the relay; wire parsing lives in :mod:`circlesync.services.codec`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from circlesync.engine.errors import InvalidMutation

__all__ = [
    "ParticipantStatus",
    "PracticeKind",
    "parse_practice",
    "Participant",
    "SessionState",
    "StateSnapshot",
    "MutationKind",
    "Mutation",
]


class ParticipantStatus(enum.StrEnum):
    """What a participant is doing right now (display only)."""
    ACTIVE = "active"
    LISTENING = "listening"
    AWAY = "away"


class PracticeKind(enum.StrEnum):
    """The guided practice a session runs."""
    BREATHING = "breathing"
    LOVING_KINDNESS = "loving-kindness"
    CHAKRA = "chakra"
    MINDFULNESS = "mindfulness"
    BODY_SCAN = "body-scan"


def parse_practice(kind: PracticeKind | str) -> PracticeKind:
    """Coerce *kind* to a :class:`PracticeKind`, raising InvalidMutation."""
    try:
        return PracticeKind(kind)
    except ValueError as exc:
        raise InvalidMutation(f"Unknown practice: {kind!r}") from exc


# ---------------------------------------------------------------------------
# Participant — owned exclusively by the PresenceTracker
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Participant:
    """One connected peer.

    ``joined_at`` decides host seniority and never changes for the lifetime
    of the entry.  ``heartbeat_at`` is the announcer's own clock;
    ``last_seen`` is when *we* last observed a fresh heartbeat, so expiry
    is immune to skew between the two clocks.
    """

    id: str
    joined_at: float
    display_name: str = "Anonymous"
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    heartbeat_at: float | None = None
    last_seen: float = 0.0

    @property
    def seniority(self) -> tuple[float, str]:
        return (self.joined_at, self.id)


# ---------------------------------------------------------------------------
# SessionState — replace-whole, never merged
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SessionState:
    """Canonical shared state of one session.

    Invariants:
      * ``synchronized_start_epoch`` is set iff ``is_playing``.
      * ``practice_kind`` and ``duration_minutes`` only change while not
        playing (enforced by :func:`circlesync.engine.state.apply_mutation`).
      * ``elapsed_before_pause`` holds the seconds consumed by earlier
        running segments, so a resume can re-stamp a fresh epoch.
    """

    is_playing: bool = False
    practice_kind: PracticeKind = PracticeKind.BREATHING
    duration_minutes: float = 10
    volume: int = 50
    synchronized_start_epoch: float | None = None
    background_audio_ref: str | None = None
    elapsed_before_pause: float = 0.0

    def __post_init__(self) -> None:
        if self.is_playing != (self.synchronized_start_epoch is not None):
            raise ValueError(
                "synchronized_start_epoch must be set exactly when is_playing"
            )

    @property
    def duration_seconds(self) -> float:
        return self.duration_minutes * 60


@dataclass(frozen=True, slots=True)
class StateSnapshot:
    """A SessionState plus the ordering stamp it was broadcast with.

    Snapshots are ordered by ``(issued_at, sequence, issuer_id)``; the
    sequence breaks ties between writes issued within the same clock tick.
    """

    state: SessionState
    issued_at: float
    sequence: int
    issuer_id: str

    @property
    def order_key(self) -> tuple[float, int, str]:
        return (self.issued_at, self.sequence, self.issuer_id)


# ---------------------------------------------------------------------------
# Mutations — what a host may ask for
# ---------------------------------------------------------------------------
class MutationKind(enum.StrEnum):
    PLAY = "play"
    PAUSE = "pause"
    STOP = "stop"
    SET_VOLUME = "set_volume"
    SET_PRACTICE = "set_practice"
    SET_DURATION = "set_duration"
    SET_BACKGROUND_AUDIO = "set_background_audio"


@dataclass(frozen=True, slots=True)
class Mutation:
    """A single host action.  Use the classmethod constructors."""

    kind: MutationKind
    value: Any = None

    @classmethod
    def play(cls) -> Mutation:
        return cls(MutationKind.PLAY)

    @classmethod
    def pause(cls) -> Mutation:
        return cls(MutationKind.PAUSE)

    @classmethod
    def stop(cls) -> Mutation:
        return cls(MutationKind.STOP)

    @classmethod
    def set_volume(cls, volume: int) -> Mutation:
        return cls(MutationKind.SET_VOLUME, volume)

    @classmethod
    def set_practice(cls, kind: PracticeKind | str) -> Mutation:
        return cls(MutationKind.SET_PRACTICE, parse_practice(kind))

    @classmethod
    def set_duration(cls, minutes: float) -> Mutation:
        return cls(MutationKind.SET_DURATION, minutes)

    @classmethod
    def set_background_audio(cls, ref: str | None) -> Mutation:
        return cls(MutationKind.SET_BACKGROUND_AUDIO, ref)
