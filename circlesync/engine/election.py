"""
circlesync.engine.election — Deterministic Host Election
=========================================================

The host is the participant with the smallest ``(joined_at, id)``.  Every
peer computes this locally from the roster it observes, so peers that see
the same roster always agree without a consensus round.
"""

from __future__ import annotations

from collections.abc import Iterable

from circlesync.engine.models import Participant

__all__ = ["elect"]


def elect(roster: Iterable[Participant]) -> str | None:
    """Return the id of the host for *roster*, or ``None`` if it is empty.

    Ties on ``joined_at`` (coarse clocks) fall back to lexicographic id
    order.  Callers must re-run this after every roster change.
    """
    host: Participant | None = None
    for participant in roster:
        if host is None or participant.seniority < host.seniority:
            host = participant
    return host.id if host is not None else None
