"""
circlesync.services.broadcaster — Host-Gated State Propagation
===============================================================

Controller side: :meth:`StateBroadcaster.propose` checks that the local
participant is the elected host *before* anything touches the network,
stamps the next snapshot, applies it locally and publishes it.

Every side: :meth:`StateBroadcaster.receive` applies an incoming snapshot
by whole-state replacement, unless it is older than what is already
applied.  That freshness rule is also what settles a host-handover race:
if two peers briefly both think they are host, the later write wins on
every peer regardless of who sent it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from circlesync.engine.errors import NotAuthorized, PresenceLost, StaleState
from circlesync.engine.models import Mutation, SessionState, StateSnapshot
from circlesync.engine.state import StateStore
from circlesync.engine.timer import TimerEngine
from circlesync.services.codec import SESSION_STATE, encode_snapshot
from circlesync.services.relay import Relay, RelayHandle

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState], None]


class StateBroadcaster:
    """Serializes host mutations to the relay and applies received ones.

    Parameters
    ----------
    store, timer:
        The session's state store and countdown; the timer is re-armed
        after every applied snapshot.
    relay:
        Relay used for publishing.  :attr:`handle` is set by the session
        once subscribed.
    local_id:
        Identity of this peer.
    host_of:
        Returns the currently elected host id (recomputed, never cached).
    """

    def __init__(
        self,
        store: StateStore,
        timer: TimerEngine,
        relay: Relay,
        local_id: str,
        host_of: Callable[[], str | None],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.timer = timer
        self.relay = relay
        self.local_id = local_id
        self._host_of = host_of
        self._clock = clock
        self.handle: RelayHandle | None = None
        self.pending_republish = False
        # Last snapshot known to have reached the relay (sent or received)
        self._confirmed: StateSnapshot | None = None
        self._listeners: list[StateCallback] = []

    def subscribe(self, callback: StateCallback) -> None:
        """Call *callback* with the new state after every applied change."""
        self._listeners.append(callback)

    # -------------------------------------------------------------------
    # Controller side
    # -------------------------------------------------------------------
    async def propose(self, mutation: Mutation) -> SessionState:
        """Apply *mutation* as host and broadcast the resulting snapshot.

        A relay outage does not undo the local change; the snapshot is
        republished after reconnecting.

        Raises
        ------
        NotAuthorized
            If the local participant is not the elected host.
        InvalidMutation
            If the mutation breaks a state invariant.
        """
        host_id = self._host_of()
        if host_id != self.local_id:
            raise NotAuthorized(self.local_id, host_id)

        snapshot = self.store.build(mutation, self.local_id, self._clock())
        if snapshot is None:
            return self.store.current

        self._apply(snapshot)
        logger.info(
            "Host %s proposed %s (seq %d)", self.local_id, mutation.kind, snapshot.sequence,
        )
        await self._publish(snapshot)
        return snapshot.state

    async def republish(self) -> bool:
        """Re-send the applied snapshot (late joiner request, reconnect).

        A host that has not written yet shares its initial state as a
        sequence-0 snapshot, so late joiners never fall back to defaults.
        """
        snapshot = self.store.snapshot
        if snapshot is None:
            snapshot = StateSnapshot(
                self.store.current, issued_at=self._clock(), sequence=0, issuer_id=self.local_id,
            )
            self.store.apply(snapshot)
        await self._publish(snapshot)
        return not self.pending_republish

    def abandon_pending(self) -> None:
        """Drop unpublished local writes and return to the last shared snapshot.

        Used when the roster seen after a reconnect shows we are no longer
        host; the new host's state then arrives through ``receive``.
        """
        if not self.pending_republish:
            return
        self.pending_republish = False
        logger.warning(
            "%s is no longer host; discarding writes made while offline", self.local_id,
        )
        self.store.reset(self._confirmed)
        self._after_apply(self.store.current)

    async def _publish(self, snapshot: StateSnapshot) -> None:
        if self.handle is None or self.handle.closed:
            self.pending_republish = True
            logger.warning("Relay unavailable; snapshot %d queued for republish", snapshot.sequence)
            return
        try:
            await self.relay.publish(self.handle, SESSION_STATE, encode_snapshot(snapshot))
        except PresenceLost:
            self.pending_republish = True
            logger.warning("Publish failed; snapshot %d queued for republish", snapshot.sequence)
            return
        self.pending_republish = False
        self._confirmed = snapshot

    # -------------------------------------------------------------------
    # Receiver side
    # -------------------------------------------------------------------
    def receive(self, snapshot: StateSnapshot) -> bool:
        """Apply a snapshot from the relay.  Returns True if state changed."""
        host_id = self._host_of()
        if host_id is not None and snapshot.issuer_id != host_id:
            logger.info(
                "Snapshot from %s while %s is host (handover in progress)",
                snapshot.issuer_id, host_id,
            )
        try:
            changed = self.store.apply(snapshot)
        except StaleState as exc:
            logger.debug("Discarding stale snapshot from %s: %s", snapshot.issuer_id, exc)
            return False
        self._confirmed = self.store.snapshot
        if changed:
            self._after_apply(snapshot.state)
        return changed

    def _apply(self, snapshot: StateSnapshot) -> None:
        if self.store.apply(snapshot):
            self._after_apply(snapshot.state)

    def _after_apply(self, state: SessionState) -> None:
        self.timer.arm(state)
        for callback in list(self._listeners):
            try:
                callback(state)
            except Exception:
                logger.exception("State listener failed")
