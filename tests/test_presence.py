"""
tests/test_presence.py — PresenceTracker Unit Tests
====================================================

Roster maintenance from sync/join/leave notifications, change
notifications, and heartbeat-based expiry (implicit leave).
"""

from __future__ import annotations

from conftest import T0, make_participant

from circlesync.engine.models import ParticipantStatus
from circlesync.engine.presence import PresenceTracker


def _tracker(clock, grace: float = 60) -> PresenceTracker:
    return PresenceTracker(grace_seconds=grace, clock=clock)


class TestRosterUpdates:
    def test_sync_builds_sorted_roster(self, clock):
        tracker = _tracker(clock)
        roster = tracker.on_sync([
            make_participant("b", T0 + 5),
            make_participant("a", T0),
        ])
        assert [p.id for p in roster] == ["a", "b"]
        assert len(tracker) == 2

    def test_sync_drops_participants_missing_from_snapshot(self, clock):
        tracker = _tracker(clock)
        tracker.on_sync([make_participant("a", T0), make_participant("b", T0 + 1)])
        tracker.on_sync([make_participant("b", T0 + 1)])
        assert [p.id for p in tracker.roster] == ["b"]

    def test_join_adds_participant(self, clock):
        tracker = _tracker(clock)
        tracker.on_join([make_participant("a", T0)])
        assert "a" in tracker

    def test_repeat_announcement_keeps_joined_at(self, clock):
        tracker = _tracker(clock)
        tracker.on_join([make_participant("a", T0, display_name="Ada")])
        tracker.on_join([
            make_participant(
                "a", T0 + 30, display_name="Ada L.",
                status=ParticipantStatus.AWAY, heartbeat_at=T0 + 30,
            )
        ])
        entry = tracker.get("a")
        assert entry.joined_at == T0
        assert entry.display_name == "Ada L."
        assert entry.status == ParticipantStatus.AWAY

    def test_leave_removes_participant(self, clock):
        tracker = _tracker(clock)
        tracker.on_sync([make_participant("a", T0), make_participant("b", T0 + 1)])
        tracker.on_leave([make_participant("a", 0)])
        assert [p.id for p in tracker.roster] == ["b"]

    def test_leave_of_unknown_participant_is_harmless(self, clock):
        tracker = _tracker(clock)
        tracker.on_sync([make_participant("a", T0)])
        tracker.on_leave([make_participant("ghost", 0)])
        assert [p.id for p in tracker.roster] == ["a"]


class TestRosterNotifications:
    def test_subscribers_receive_new_roster(self, clock):
        tracker = _tracker(clock)
        seen = []
        tracker.subscribe(lambda roster: seen.append([p.id for p in roster]))
        tracker.on_join([make_participant("a", T0)])
        tracker.on_join([make_participant("b", T0 + 1)])
        assert seen == [["a"], ["a", "b"]]

    def test_heartbeat_only_change_does_not_notify(self, clock):
        tracker = _tracker(clock)
        tracker.on_join([make_participant("a", T0, heartbeat_at=T0)])
        seen = []
        tracker.subscribe(seen.append)
        clock.advance(20)
        tracker.on_join([make_participant("a", T0, heartbeat_at=T0 + 20)])
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self, clock):
        tracker = _tracker(clock)
        seen = []

        def _boom(roster):
            raise RuntimeError("ui crashed")

        tracker.subscribe(_boom)
        tracker.subscribe(seen.append)
        tracker.on_join([make_participant("a", T0)])
        assert len(seen) == 1


class TestExpiry:
    def test_silent_participant_expires_after_grace(self, clock):
        tracker = _tracker(clock, grace=60)
        tracker.on_sync([
            make_participant("a", T0, heartbeat_at=T0),
            make_participant("b", T0 + 1, heartbeat_at=T0),
        ])
        clock.advance(40)
        tracker.on_join([make_participant("b", T0 + 1, heartbeat_at=clock.now)])
        clock.advance(30)

        removed = tracker.expire()
        assert [p.id for p in removed] == ["a"]
        assert [p.id for p in tracker.roster] == ["b"]

    def test_keep_protects_local_participant(self, clock):
        tracker = _tracker(clock, grace=60)
        tracker.on_sync([make_participant("me", T0), make_participant("peer", T0 + 1)])
        clock.advance(120)
        tracker.expire(keep={"me"})
        assert [p.id for p in tracker.roster] == ["me"]

    def test_nothing_expires_within_grace(self, clock):
        tracker = _tracker(clock, grace=60)
        tracker.on_sync([make_participant("a", T0)])
        clock.advance(59)
        assert tracker.expire() == []

    def test_stale_sync_does_not_resurrect_expired_peer(self, clock):
        """The relay may keep listing a dropped peer with its old heartbeat."""
        tracker = _tracker(clock, grace=60)
        stale = make_participant("a", T0, heartbeat_at=T0)
        tracker.on_sync([stale, make_participant("b", T0 + 1, heartbeat_at=T0)])
        clock.advance(61)
        tracker.expire(keep={"b"})

        tracker.on_sync([stale, make_participant("b", T0 + 1, heartbeat_at=clock.now)])
        assert [p.id for p in tracker.roster] == ["b"]

    def test_fresh_heartbeat_readmits_expired_peer(self, clock):
        tracker = _tracker(clock, grace=60)
        tracker.on_sync([make_participant("a", T0, heartbeat_at=T0)])
        clock.advance(61)
        tracker.expire()
        tracker.on_join([make_participant("a", T0, heartbeat_at=clock.now)])
        assert "a" in tracker

    def test_touch_restarts_grace_for_every_peer(self, clock):
        tracker = _tracker(clock, grace=60)
        tracker.on_sync([make_participant("a", T0, heartbeat_at=T0), make_participant("b", T0 + 1)])
        clock.advance(300)
        tracker.touch()
        clock.advance(59)
        assert tracker.expire() == []
        assert [p.id for p in tracker.roster] == ["a", "b"]

    def test_remove_blocks_lagging_sync(self, clock):
        tracker = _tracker(clock)
        entry = make_participant("a", T0, heartbeat_at=T0)
        tracker.on_sync([entry, make_participant("b", T0 + 1)])
        assert tracker.remove("a") is True
        tracker.on_sync([entry, make_participant("b", T0 + 1)])
        assert "a" not in tracker
        assert tracker.remove("a") is False
