"""
circlesync.engine.events — Typed Relay Events
==============================================

The relay delivers loosely-typed dicts.  The codec normalizes each one into
exactly one of the event types below before the session's receive loop
dispatches it, so ordering and stale-discard logic only ever deal with
typed values.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from circlesync.engine.models import Participant, StateSnapshot

__all__ = [
    "PresenceKind",
    "PresenceEvent",
    "StateEvent",
    "StateRequestEvent",
    "RelinquishEvent",
    "RelayEvent",
]


class PresenceKind(enum.StrEnum):
    SYNC = "sync"
    JOIN = "join"
    LEAVE = "leave"


@dataclass(frozen=True, slots=True)
class PresenceEvent:
    """Roster notification.  ``sync`` carries the full roster."""

    kind: PresenceKind
    entries: tuple[Participant, ...]


@dataclass(frozen=True, slots=True)
class StateEvent:
    """A host-issued whole-state snapshot."""

    snapshot: StateSnapshot


@dataclass(frozen=True, slots=True)
class StateRequestEvent:
    """A late joiner asking the host to republish the current state."""

    requester_id: str


@dataclass(frozen=True, slots=True)
class RelinquishEvent:
    """A participant leaving on purpose; peers re-elect without waiting."""

    participant_id: str


RelayEvent = PresenceEvent | StateEvent | StateRequestEvent | RelinquishEvent
