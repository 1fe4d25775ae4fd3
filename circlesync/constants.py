"""
circlesync.constants — Shared Constants & Helpers
==================================================

Single source of truth for the practice catalog and the countdown
formatting used by UI shells.  Import from here instead of duplicating.
"""

from __future__ import annotations

from circlesync.engine.models import PracticeKind

# ---------------------------------------------------------------------------
# Practice catalog
# ---------------------------------------------------------------------------
PRACTICE_NAMES: dict[PracticeKind, str] = {
    PracticeKind.BREATHING: "Breath Awareness",
    PracticeKind.LOVING_KINDNESS: "Heart Opening",
    PracticeKind.CHAKRA: "Energy Alignment",
    PracticeKind.MINDFULNESS: "Consciousness Observation",
    PracticeKind.BODY_SCAN: "Somatic Integration",
}

# Minutes a practice runs for when the host hasn't picked a duration
PRACTICE_DEFAULT_MINUTES: dict[PracticeKind, int] = {
    PracticeKind.BREATHING: 10,
    PracticeKind.LOVING_KINDNESS: 15,
    PracticeKind.CHAKRA: 20,
    PracticeKind.MINDFULNESS: 12,
    PracticeKind.BODY_SCAN: 18,
}

AVAILABLE_DURATIONS: tuple[int, ...] = (5, 10, 15, 20, 25, 30, 45, 60)

VOLUME_MIN = 0
VOLUME_MAX = 100
DEFAULT_VOLUME = 50


# ---------------------------------------------------------------------------
# Countdown helpers
# ---------------------------------------------------------------------------
def format_clock(seconds: float) -> str:
    """Render *seconds* as ``m:ss`` (minutes are not wrapped at 60)."""
    seconds = max(0.0, seconds)
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"


def default_minutes(kind: PracticeKind | str) -> int:
    return PRACTICE_DEFAULT_MINUTES[PracticeKind(kind)]
