"""
circlesync.services.session — One Joined Group Session
=======================================================

**Why this file exists:**
A :class:`GroupSession` is the context object for a single session a local
participant has joined.  It owns every moving part (presence tracker, state
store, countdown, broadcaster, heartbeat, relay subscription) so several
sessions can live in one process and each can be torn down cleanly.

Data flow::

    relay inbox ─▶ receive loop ─▶ codec ─▶ PresenceEvent ─▶ PresenceTracker ─▶ elect()
                                       └──▶ StateEvent ────▶ StateBroadcaster ─▶ StateStore ─▶ TimerEngine

Usage::

    session = GroupSession("abc123", "user-42", relay, display_name="Ada")
    session.on_complete(lambda: print("done"))
    await session.join()
    if session.is_local_host():
        await session.propose(Mutation.play())
    print(session.get_remaining_seconds())
    await session.leave()
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import random
import time
from collections.abc import Callable

from circlesync.config import SyncConfig
from circlesync.engine.election import elect
from circlesync.engine.errors import MalformedMessage, PresenceLost
from circlesync.engine.events import (
    PresenceEvent,
    PresenceKind,
    RelayEvent,
    RelinquishEvent,
    StateEvent,
    StateRequestEvent,
)
from circlesync.engine.models import (
    Mutation,
    Participant,
    ParticipantStatus,
    SessionState,
)
from circlesync.engine.presence import PresenceTracker
from circlesync.engine.state import StateStore
from circlesync.engine.timer import TimerEngine
from circlesync.services.broadcaster import StateBroadcaster
from circlesync.services.codec import (
    RELINQUISH,
    REQUEST_STATE,
    decode_event,
    encode_presence_entry,
    encode_relinquish,
    encode_state_request,
)
from circlesync.services.heartbeat import Heartbeat
from circlesync.services.relay import Relay, RelayHandle

logger = logging.getLogger(__name__)

RosterChangeCallback = Callable[[list[Participant], str | None], None]


class ConnectionStatus(enum.StrEnum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class GroupSession:
    """Synchronization context for one session and one local participant.

    Parameters
    ----------
    session_id:
        Session identifier; the relay topic is derived from it.
    participant_id:
        Identity of the local participant (from the auth layer).
    relay:
        Any :class:`~circlesync.services.relay.Relay` implementation.
    display_name, status:
        Announced in the local presence entry.
    cfg:
        Timing configuration; defaults to :class:`SyncConfig()`.
    initial_state:
        What the session shows before the host's first broadcast.
    clock:
        Wall-clock source in epoch seconds (injectable for tests).
    """

    def __init__(
        self,
        session_id: str,
        participant_id: str,
        relay: Relay,
        *,
        display_name: str = "Anonymous",
        status: ParticipantStatus = ParticipantStatus.ACTIVE,
        cfg: SyncConfig | None = None,
        initial_state: SessionState | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self.participant_id = participant_id
        self.display_name = display_name
        self.participant_status = status
        self.cfg = cfg or SyncConfig()
        self.relay = relay
        self.topic = self.cfg.topic_for(session_id)
        self._clock = clock

        self.presence = PresenceTracker(self.cfg.presence_grace_seconds, clock=clock)
        self.store = StateStore(initial_state)
        self.timer = TimerEngine(clock=clock, tick_interval=self.cfg.tick_interval_seconds)
        self.broadcaster = StateBroadcaster(
            self.store, self.timer, relay, participant_id,
            host_of=lambda: self.host_id, clock=clock,
        )
        self.heartbeat = Heartbeat(self.cfg.heartbeat_interval_seconds, self._beat)

        self._joined_at: float | None = None
        self._handle: RelayHandle | None = None
        self._receive_task: asyncio.Task | None = None
        self._status = ConnectionStatus.IDLE
        self._closing = False
        # Set on reconnect until the relay's first full roster is applied
        self._awaiting_sync = False
        self._last_host: str | None = None
        self._resources: list[Callable[[], object]] = []
        self._roster_callbacks: list[RosterChangeCallback] = []
        self._status_callbacks: list[Callable[[ConnectionStatus], None]] = []

        self.presence.subscribe(self._on_roster_changed)
        self.timer.arm(self.store.current)

    # -------------------------------------------------------------------
    # UI surface
    # -------------------------------------------------------------------
    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def roster(self) -> list[Participant]:
        return self.presence.roster

    @property
    def host_id(self) -> str | None:
        """Elected host, recomputed from the current roster on every read."""
        return elect(self.presence.roster)

    def is_local_host(self) -> bool:
        return self.host_id == self.participant_id

    def get_remaining_seconds(self) -> float:
        return self.timer.remaining()

    def get_progress(self) -> float:
        return self.timer.progress()

    def get_session_state(self) -> SessionState:
        return self.store.current

    async def propose(self, mutation: Mutation) -> SessionState:
        """Mutate the shared state (host only).  See :class:`StateBroadcaster`."""
        return await self.broadcaster.propose(mutation)

    def on_complete(self, callback: Callable[[], None]) -> None:
        self.timer.on_complete(callback)

    def on_roster_change(self, callback: RosterChangeCallback) -> None:
        """Call ``callback(roster, host_id)`` after every roster change."""
        self._roster_callbacks.append(callback)

    def on_state_change(self, callback: Callable[[SessionState], None]) -> None:
        self.broadcaster.subscribe(callback)

    def on_connection_change(self, callback: Callable[[ConnectionStatus], None]) -> None:
        self._status_callbacks.append(callback)

    def register_resource(self, closer: Callable[[], object]) -> None:
        """Register a local resource (e.g. a media element) released on leave.

        *closer* may be a plain function or a coroutine function.
        """
        self._resources.append(closer)

    async def __aenter__(self) -> GroupSession:
        await self.join()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.leave()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def join(self) -> None:
        """Subscribe, announce presence, pull current state and start loops."""
        if self._status != ConnectionStatus.IDLE:
            raise RuntimeError(f"Session {self.session_id} already {self._status}")

        self._joined_at = self._clock()
        await self._connect()
        self._set_status(ConnectionStatus.CONNECTED)

        loop = asyncio.get_running_loop()
        self.heartbeat.start(loop)
        self.timer.start(loop)
        self._receive_task = loop.create_task(
            self._receive_loop(), name=f"session-receive-{self.session_id}",
        )
        logger.info("%s joined session %s", self.participant_id, self.session_id)

    async def leave(self) -> None:
        """Stop timers, release local resources and announce the departure.

        The ``relinquish`` broadcast lets peers drop us and re-elect at once
        instead of waiting for a presence timeout.
        """
        if self._status == ConnectionStatus.CLOSED:
            return
        self._closing = True

        self.timer.stop()
        self.heartbeat.stop()
        if self._receive_task is not None:
            self._receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None

        for closer in reversed(self._resources):
            try:
                result = closer()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Failed to release session resource %r", closer)
        self._resources.clear()

        handle = self._handle
        if handle is not None and not handle.closed:
            try:
                await self.relay.publish(handle, RELINQUISH, encode_relinquish(self.participant_id))
                await self.relay.unsubscribe(handle)
            except PresenceLost:
                logger.warning("Relay lost while leaving session %s", self.session_id)
        self._handle = None
        self.broadcaster.handle = None

        self._set_status(ConnectionStatus.CLOSED)
        logger.info("%s left session %s", self.participant_id, self.session_id)

    # -------------------------------------------------------------------
    # Relay plumbing
    # -------------------------------------------------------------------
    def _local_entry(self) -> Participant:
        return Participant(
            id=self.participant_id,
            joined_at=self._joined_at,
            display_name=self.display_name,
            status=self.participant_status,
            heartbeat_at=self._clock(),
        )

    async def _connect(self) -> None:
        """Subscribe and announce; shared by join and reconnect."""
        handle = await self.relay.subscribe(self.topic, self.participant_id)
        self._handle = handle
        self.broadcaster.handle = handle

        entry = self._local_entry()
        self.presence.on_join([entry])
        await self.relay.track(handle, encode_presence_entry(entry))
        # Late joiners pull the current state instead of waiting for the next change
        await self.relay.publish(handle, REQUEST_STATE, encode_state_request(self.participant_id))

    async def _receive_loop(self) -> None:
        while not self._closing:
            try:
                raw = await self._handle.receive()
            except PresenceLost:
                if self._closing:
                    return
                await self._recover()
                continue

            try:
                event = decode_event(raw)
            except MalformedMessage as exc:
                logger.warning("Dropping malformed relay message: %s", exc)
                continue

            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Error handling %s", type(event).__name__)

    async def _dispatch(self, event: RelayEvent) -> None:
        if isinstance(event, PresenceEvent):
            if event.kind == PresenceKind.SYNC:
                self.presence.on_sync(self._with_local(event.entries))
                if self._awaiting_sync:
                    self._awaiting_sync = False
                    await self._settle_offline_writes()
            elif event.kind == PresenceKind.JOIN:
                self.presence.on_join(event.entries)
            else:
                self.presence.on_leave(
                    [p for p in event.entries if p.id != self.participant_id]
                )
        elif isinstance(event, StateEvent):
            self.broadcaster.receive(event.snapshot)
        elif isinstance(event, StateRequestEvent):
            if event.requester_id != self.participant_id and self.is_local_host():
                await self.broadcaster.republish()
        elif isinstance(event, RelinquishEvent):
            if event.participant_id != self.participant_id:
                logger.info("%s relinquished session %s", event.participant_id, self.session_id)
                self.presence.remove(event.participant_id)

    def _with_local(self, entries: tuple[Participant, ...]) -> list[Participant]:
        """A sync can race our own track; we are present while subscribed."""
        if any(p.id == self.participant_id for p in entries):
            return list(entries)
        local = self.presence.get(self.participant_id) or self._local_entry()
        return [*entries, local]

    async def _recover(self) -> None:
        """Resubscribe with exponential backoff + jitter, never giving up.

        While disconnected the countdown display is frozen on the last known
        value; on reconnect it is recomputed from the epoch.  Silence heard
        while offline says nothing about the peers, so the roster is neither
        expired during the outage nor trusted for host checks until the
        relay's first post-reconnect ``sync`` arrives.
        """
        self._set_status(ConnectionStatus.RECONNECTING)
        self.timer.freeze()
        self.broadcaster.handle = None

        base = self.cfg.reconnect_base_backoff_seconds
        max_backoff = self.cfg.reconnect_max_backoff_seconds
        attempt = 0
        while not self._closing:
            attempt += 1
            backoff = min(base * (2 ** (attempt - 1)), max_backoff)
            wait = backoff + random.uniform(0, backoff * 0.5)
            if attempt == self.cfg.reconnect_alert_after:
                logger.critical(
                    "Session %s still reconnecting after %d attempts",
                    self.session_id, attempt,
                )
            else:
                logger.warning(
                    "Relay lost for session %s (attempt %d). Reconnecting in %.1fs…",
                    self.session_id, attempt, wait,
                )
            await asyncio.sleep(wait)
            if self._closing:
                return
            try:
                await self._connect()
            except (PresenceLost, OSError):
                continue
            break
        if self._closing:
            return

        self.presence.touch()
        self._awaiting_sync = True
        self.timer.thaw()
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("Session %s reconnected after %d attempt(s)", self.session_id, attempt)

    async def _settle_offline_writes(self) -> None:
        """Publish or drop the writes made while offline, by the fresh roster."""
        if not self.broadcaster.pending_republish:
            return
        if self.is_local_host():
            await self.broadcaster.republish()
        else:
            self.broadcaster.abandon_pending()

    async def _beat(self) -> None:
        if self._status != ConnectionStatus.CONNECTED:
            return
        handle = self._handle
        if handle is not None and not handle.closed:
            await self.relay.track(handle, encode_presence_entry(self._local_entry()))
        self.presence.expire(keep={self.participant_id})

    # -------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------
    def _on_roster_changed(self, roster: list[Participant]) -> None:
        host_id = elect(roster)
        if host_id != self._last_host:
            logger.info(
                "Session %s host is now %s (was %s)",
                self.session_id, host_id, self._last_host,
            )
            self._last_host = host_id
        for callback in list(self._roster_callbacks):
            try:
                callback(roster, host_id)
            except Exception:
                logger.exception("Roster change callback failed")

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.info("Session %s connection %s", self.session_id, status)
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("Connection status callback failed")
