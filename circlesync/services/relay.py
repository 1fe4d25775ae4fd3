"""
circlesync.services.relay — Relay Contract & Loopback Implementation
=====================================================================

The publish/subscribe relay is an external collaborator.  circlesync only
needs four primitives from it (:class:`Relay`) plus a per-subscription
inbox that yields raw message dicts (:class:`RelayHandle`).  Adapters for a
real vendor implement :class:`Relay` and push incoming messages with
:meth:`RelayHandle.deliver`.

:class:`InMemoryRelay` routes messages between handles in one process.  It
backs the test-suite and lets several :class:`GroupSession` objects share a
session locally.  It mimics a hosted presence channel: every presence
change is followed by a full ``sync``, and broadcasts are not echoed back
to the sender unless ``echo`` is set.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from circlesync.config import SyncConfig
from circlesync.engine.errors import PresenceLost

logger = logging.getLogger(__name__)

__all__ = ["Relay", "RelayHandle", "InMemoryRelay"]

# Inbox marker for a dropped connection
_DISCONNECTED = object()


@dataclass(eq=False)
class RelayHandle:
    """One subscription: a topic, the local identity and its inbox."""

    topic: str
    identity: str
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    closed: bool = False

    def deliver(self, message: dict[str, Any]) -> None:
        """Queue an inbound message (called by the relay adapter)."""
        if not self.closed:
            self.inbox.put_nowait(message)

    def disconnect(self) -> None:
        """Mark the connection lost; the next :meth:`receive` raises."""
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_DISCONNECTED)

    async def receive(self) -> dict[str, Any]:
        """Wait for the next raw message.

        Raises
        ------
        PresenceLost
            If the connection dropped.
        """
        message = await self.inbox.get()
        if message is _DISCONNECTED:
            raise PresenceLost(f"Relay connection lost on {self.topic}")
        return message


class Relay(Protocol):
    """The subset of a pub/sub relay circlesync depends on."""

    async def subscribe(self, topic: str, identity: str) -> RelayHandle: ...

    async def publish(self, handle: RelayHandle, kind: str, payload: dict[str, Any]) -> None: ...

    async def track(self, handle: RelayHandle, entry: dict[str, Any]) -> None: ...

    async def unsubscribe(self, handle: RelayHandle) -> None: ...


class InMemoryRelay:
    """Process-local relay.

    Usage::

        relay = InMemoryRelay()
        a = GroupSession("s1", local_a, relay=relay)
        b = GroupSession("s1", local_b, relay=relay)
    """

    def __init__(self, echo: bool = False) -> None:
        self.echo = echo
        # topic → identity → handle
        self._handles: dict[str, dict[str, RelayHandle]] = {}
        # topic → identity → last tracked entry
        self._presence: dict[str, dict[str, dict[str, Any]]] = {}
        # (topic, identity) pairs that cannot resubscribe
        self._blocked: set[tuple[str, str]] = set()
        self.published: list[tuple[str, str, str, dict[str, Any]]] = []

    @classmethod
    def from_config(cls, cfg: SyncConfig) -> InMemoryRelay:
        return cls(echo=cfg.broadcast_echo)

    # -------------------------------------------------------------------
    # Relay protocol
    # -------------------------------------------------------------------
    async def subscribe(self, topic: str, identity: str) -> RelayHandle:
        if (topic, identity) in self._blocked:
            raise PresenceLost(f"Relay unreachable for {identity} on {topic}")
        handle = RelayHandle(topic=topic, identity=identity)
        previous = self._handles.setdefault(topic, {}).get(identity)
        if previous is not None:
            previous.closed = True
        self._handles[topic][identity] = handle
        logger.debug("%s subscribed to %s", identity, topic)
        return handle

    async def publish(self, handle: RelayHandle, kind: str, payload: dict[str, Any]) -> None:
        self._ensure_open(handle)
        self.published.append((handle.topic, handle.identity, kind, payload))
        message = {"kind": kind, "payload": payload}
        for identity, peer in list(self._handles.get(handle.topic, {}).items()):
            if identity == handle.identity and not self.echo:
                continue
            peer.deliver(message)

    async def track(self, handle: RelayHandle, entry: dict[str, Any]) -> None:
        self._ensure_open(handle)
        presence = self._presence.setdefault(handle.topic, {})
        presence[handle.identity] = dict(entry)
        self._fan_out(handle.topic, {"kind": "join", "entries": [dict(entry)]})
        self._sync(handle.topic)

    async def unsubscribe(self, handle: RelayHandle) -> None:
        handle.closed = True
        handles = self._handles.get(handle.topic, {})
        if handles.get(handle.identity) is handle:
            del handles[handle.identity]
            self._remove_presence(handle.topic, handle.identity)

    # -------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------
    def drop(self, topic: str, identity: str, *, keep_presence: bool = True) -> None:
        """Simulate a silent network drop of *identity*.

        With *keep_presence* the relay keeps announcing the stale entry,
        so peers can only notice through heartbeat expiry.
        """
        handle = self._handles.get(topic, {}).pop(identity, None)
        if handle is not None:
            handle.disconnect()
        if not keep_presence:
            self._remove_presence(topic, identity)

    def block(self, topic: str, identity: str) -> None:
        self._blocked.add((topic, identity))

    def unblock(self, topic: str, identity: str) -> None:
        self._blocked.discard((topic, identity))

    def presence(self, topic: str) -> dict[str, dict[str, Any]]:
        return dict(self._presence.get(topic, {}))

    def subscribers(self, topic: str) -> list[str]:
        return list(self._handles.get(topic, {}))

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _ensure_open(self, handle: RelayHandle) -> None:
        if handle.closed:
            raise PresenceLost(f"Handle for {handle.identity} on {handle.topic} is closed")

    def _remove_presence(self, topic: str, identity: str) -> None:
        entry = self._presence.get(topic, {}).pop(identity, None)
        if entry is not None:
            self._fan_out(topic, {"kind": "leave", "entries": [entry]})
            self._sync(topic)

    def _sync(self, topic: str) -> None:
        entries = [dict(e) for e in self._presence.get(topic, {}).values()]
        self._fan_out(topic, {"kind": "sync", "entries": entries})

    def _fan_out(self, topic: str, message: dict[str, Any]) -> None:
        for handle in list(self._handles.get(topic, {}).values()):
            handle.deliver(message)
