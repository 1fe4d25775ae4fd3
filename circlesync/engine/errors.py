"""
circlesync.engine.errors — Synchronization Error Taxonomy
==========================================================

Only a sustained :class:`PresenceLost` is ever surfaced to a user (as a
"reconnecting" status).  Everything else is either a local guard or a
message that is dropped and logged.
"""

from __future__ import annotations

__all__ = [
    "SyncError",
    "PresenceLost",
    "NotAuthorized",
    "StaleState",
    "MalformedMessage",
    "InvalidMutation",
]


class SyncError(Exception):
    """Base class for every error raised by circlesync."""


class PresenceLost(SyncError):
    """The relay connection dropped; recoverable by resubscribing."""


class NotAuthorized(SyncError):
    """A non-host tried to mutate the shared session state."""

    def __init__(self, participant_id: str, host_id: str | None) -> None:
        super().__init__(
            f"Participant {participant_id!r} is not the session host "
            f"(host is {host_id!r})"
        )
        self.participant_id = participant_id
        self.host_id = host_id


class StaleState(SyncError):
    """A received snapshot is older than the one already applied."""


class MalformedMessage(SyncError):
    """A relay message could not be parsed or violates state invariants."""


class InvalidMutation(SyncError, ValueError):
    """A proposed mutation is not allowed in the current state."""
