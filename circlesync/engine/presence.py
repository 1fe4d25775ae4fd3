"""
circlesync.engine.presence — Live Session Roster
=================================================

Consumes presence notifications from the relay and maintains who is in
the session.  Host election depends on this roster being accurate, so the
tracker also expires peers whose heartbeats stopped (an implicit leave).

Expired and relinquished ids are remembered together with the last
heartbeat they announced.  A later ``sync`` that still lists them with the
same heartbeat is the relay lagging behind, not the peer coming back, so
they stay out until a fresh heartbeat arrives.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from circlesync.engine.models import Participant

logger = logging.getLogger(__name__)

RosterCallback = Callable[[list[Participant]], None]


class PresenceTracker:
    """Roster for one session, keyed by participant id.

    Usage::

        tracker = PresenceTracker(grace_seconds=60)
        tracker.subscribe(lambda roster: print([p.id for p in roster]))
        tracker.on_sync(entries)
        tracker.expire(keep={local_id})
    """

    def __init__(
        self,
        grace_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._entries: dict[str, Participant] = {}
        # participant_id → heartbeat_at it was dropped with
        self._tombstones: dict[str, float | None] = {}
        self._subscribers: list[RosterCallback] = []

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    @property
    def roster(self) -> list[Participant]:
        """Participants ordered by seniority (``joined_at``, then id)."""
        return sorted(self._entries.values(), key=lambda p: p.seniority)

    def get(self, participant_id: str) -> Participant | None:
        return self._entries.get(participant_id)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, callback: RosterCallback) -> None:
        """Call *callback* with the new roster after every change."""
        self._subscribers.append(callback)

    # -------------------------------------------------------------------
    # Relay notifications
    # -------------------------------------------------------------------
    def on_sync(self, entries: Iterable[Participant]) -> list[Participant]:
        """Replace the roster with the relay's full presence snapshot."""
        before = self._signature()
        now = self._clock()
        fresh: dict[str, Participant] = {}
        for entry in entries:
            merged = self._merge(entry, now)
            if merged is not None:
                fresh[merged.id] = merged
        self._entries = fresh
        self._notify_if_changed(before)
        return self.roster

    def on_join(self, entries: Iterable[Participant]) -> list[Participant]:
        before = self._signature()
        now = self._clock()
        for entry in entries:
            merged = self._merge(entry, now)
            if merged is not None:
                self._entries[merged.id] = merged
        self._notify_if_changed(before)
        return self.roster

    def on_leave(self, entries: Iterable[Participant]) -> list[Participant]:
        before = self._signature()
        for entry in entries:
            if self._entries.pop(entry.id, None) is not None:
                logger.debug("Participant %s left", entry.id)
        self._notify_if_changed(before)
        return self.roster

    def remove(self, participant_id: str) -> bool:
        """Drop *participant_id* now (explicit relinquish)."""
        before = self._signature()
        entry = self._entries.pop(participant_id, None)
        if entry is None:
            return False
        self._tombstones[participant_id] = entry.heartbeat_at
        self._notify_if_changed(before)
        return True

    def expire(
        self, now: float | None = None, keep: Iterable[str] = ()
    ) -> list[Participant]:
        """Remove peers silent for longer than the grace period.

        Ids in *keep* (the local participant) are never expired.
        Returns the removed participants.
        """
        now = self._clock() if now is None else now
        keep = set(keep)
        cutoff = now - self.grace_seconds
        stale = [
            p for p in self._entries.values()
            if p.id not in keep and p.last_seen < cutoff
        ]
        if not stale:
            return []

        before = self._signature()
        for p in stale:
            del self._entries[p.id]
            self._tombstones[p.id] = p.heartbeat_at
            logger.info(
                "Participant %s timed out (silent for %.0fs)",
                p.id, now - p.last_seen,
            )
        self._notify_if_changed(before)
        return stale

    def touch(self, now: float | None = None) -> None:
        """Mark every known peer as just seen (after our own outage)."""
        now = self._clock() if now is None else now
        self._entries = {
            pid: replace(p, last_seen=now) for pid, p in self._entries.items()
        }

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _merge(self, entry: Participant, now: float) -> Participant | None:
        """Fold an announcement into the known entry for the same id."""
        if entry.id in self._tombstones:
            if entry.heartbeat_at == self._tombstones[entry.id]:
                return None
            del self._tombstones[entry.id]

        known = self._entries.get(entry.id)
        if known is None:
            return replace(entry, last_seen=now)

        last_seen = known.last_seen
        if entry.heartbeat_at != known.heartbeat_at:
            last_seen = now
        return replace(
            known,
            display_name=entry.display_name,
            status=entry.status,
            heartbeat_at=entry.heartbeat_at,
            last_seen=last_seen,
        )

    def _signature(self) -> list[tuple]:
        return [
            (p.id, p.joined_at, p.display_name, p.status) for p in self.roster
        ]

    def _notify_if_changed(self, before: list[tuple]) -> None:
        if self._signature() == before:
            return
        roster = self.roster
        for callback in list(self._subscribers):
            try:
                callback(roster)
            except Exception:
                logger.exception("Roster subscriber failed")
