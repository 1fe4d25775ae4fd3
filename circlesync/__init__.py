"""
circlesync — Shared Countdown Synchronization for Group Sessions
=================================================================
Keeps a group meditation session consistent across independently
connected clients that only share a publish/subscribe relay.  Every peer
tracks presence, elects the same host, applies the host's whole-state
snapshots and derives the countdown from one shared start epoch.

Package layout::

    circlesync/
    ├── config.py          # YAML + .env → typed SyncConfig, logging setup
    ├── constants.py       # Practice catalog, duration choices, clock helpers
    ├── engine/
    │   ├── errors.py      # SyncError taxonomy
    │   ├── models.py      # Participant, SessionState, StateSnapshot, Mutation
    │   ├── events.py      # Typed relay events (PresenceEvent | StateEvent | …)
    │   ├── election.py    # Deterministic host election
    │   ├── presence.py    # Live roster with heartbeat expiry
    │   ├── state.py       # Mutation rules + stale-discarding StateStore
    │   └── timer.py       # Recompute-from-epoch countdown
    └── services/
        ├── codec.py       # pydantic wire models
        ├── relay.py       # Relay protocol + in-memory loopback relay
        ├── broadcaster.py # Host-gated propose / receive
        ├── heartbeat.py   # Periodic presence re-announcement
        └── session.py     # GroupSession: one context per joined session
"""

__version__ = "0.1.0"
