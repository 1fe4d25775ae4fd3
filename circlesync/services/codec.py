"""
circlesync.services.codec — Relay Wire Format
==============================================

Translates between raw relay dicts (camelCase keys) and the typed values in
:mod:`circlesync.engine`.  Every inbound payload is validated with pydantic;
anything that fails becomes :class:`MalformedMessage` so the receive loop
can drop it without special cases.

Message shapes::

    {"kind": "sync" | "join" | "leave", "entries": [{id, joinedAt, ...}, ...]}
    {"kind": "session_state", "payload": {"state": {...}, "issuedAt", "sequence", "issuerId"}}
    {"kind": "request_state", "payload": {"requesterId"}}
    {"kind": "relinquish", "payload": {"participantId"}}
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from circlesync.engine.errors import MalformedMessage
from circlesync.engine.events import (
    PresenceEvent,
    PresenceKind,
    RelayEvent,
    RelinquishEvent,
    StateEvent,
    StateRequestEvent,
)
from circlesync.engine.models import (
    Participant,
    ParticipantStatus,
    PracticeKind,
    SessionState,
    StateSnapshot,
)

logger = logging.getLogger(__name__)

SESSION_STATE = "session_state"
REQUEST_STATE = "request_state"
RELINQUISH = "relinquish"

# Older clients announce "meditating" for an engaged participant
_STATUS_ALIASES = {"meditating": ParticipantStatus.ACTIVE}


def _to_epoch(value: Any) -> Any:
    """Accept epoch seconds or an ISO-8601 string (naive means UTC)."""
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.timestamp()
    return value


# ---------------------------------------------------------------------------
# Pydantic wire schemas
# ---------------------------------------------------------------------------
class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class PresenceEntryModel(_WireModel):
    id: str = Field(min_length=1)
    joined_at: float = Field(validation_alias=AliasChoices("joinedAt", "joined_at"))
    display_name: str = Field(
        default="Anonymous",
        validation_alias=AliasChoices("displayName", "name"),
    )
    status: ParticipantStatus = ParticipantStatus.ACTIVE
    heartbeat_at: float | None = Field(
        default=None, validation_alias=AliasChoices("heartbeatAt", "heartbeat_at"),
    )

    @field_validator("joined_at", "heartbeat_at", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return _to_epoch(value)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> Any:
        if value is None:
            return ParticipantStatus.ACTIVE
        text = str(value).strip().lower()
        if text in _STATUS_ALIASES:
            return _STATUS_ALIASES[text]
        if text not in ParticipantStatus._value2member_map_:
            return ParticipantStatus.ACTIVE
        return text

    def to_participant(self) -> Participant:
        return Participant(
            id=self.id,
            joined_at=self.joined_at,
            display_name=self.display_name,
            status=self.status,
            heartbeat_at=self.heartbeat_at,
        )


class SessionStateModel(_WireModel):
    is_playing: bool = Field(alias="isPlaying")
    practice_kind: PracticeKind = Field(alias="practiceKind")
    duration_minutes: float = Field(alias="durationMinutes", gt=0)
    volume: int = Field(ge=0, le=100)
    synchronized_start_epoch: float | None = Field(default=None, alias="synchronizedStartEpoch")
    background_audio_ref: str | None = Field(default=None, alias="backgroundAudioRef")
    elapsed_before_pause: float = Field(default=0.0, alias="elapsedBeforePause", ge=0)

    @model_validator(mode="after")
    def _epoch_iff_playing(self) -> SessionStateModel:
        if self.is_playing != (self.synchronized_start_epoch is not None):
            raise ValueError("synchronizedStartEpoch must be present iff isPlaying")
        return self

    def to_state(self) -> SessionState:
        return SessionState(
            is_playing=self.is_playing,
            practice_kind=self.practice_kind,
            duration_minutes=self.duration_minutes,
            volume=self.volume,
            synchronized_start_epoch=self.synchronized_start_epoch,
            background_audio_ref=self.background_audio_ref,
            elapsed_before_pause=self.elapsed_before_pause,
        )


class SnapshotModel(_WireModel):
    state: SessionStateModel
    issued_at: float = Field(alias="issuedAt")
    sequence: int = Field(ge=0)
    issuer_id: str = Field(alias="issuerId", min_length=1)

    def to_snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            state=self.state.to_state(),
            issued_at=self.issued_at,
            sequence=self.sequence,
            issuer_id=self.issuer_id,
        )


class StateRequestModel(_WireModel):
    requester_id: str = Field(alias="requesterId", min_length=1)


class RelinquishModel(_WireModel):
    participant_id: str = Field(alias="participantId", min_length=1)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------
def parse_presence_entries(raw_entries: Any, *, require_joined: bool = True) -> list[Participant]:
    """Parse presence entries, dropping (and logging) malformed ones.

    Leave notifications only need an id, so *require_joined* can be turned
    off for them.
    """
    if not isinstance(raw_entries, list):
        raise MalformedMessage(f"Presence entries must be a list, got {type(raw_entries).__name__}")

    participants: list[Participant] = []
    for raw in raw_entries:
        if not require_joined and isinstance(raw, dict) and not (
            raw.keys() & {"joinedAt", "joined_at"}
        ):
            raw = {**raw, "joinedAt": 0.0}
        try:
            participants.append(PresenceEntryModel.model_validate(raw).to_participant())
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("Dropping malformed presence entry %r: %s", raw, exc)
    return participants


def decode_event(raw: Any) -> RelayEvent:
    """Turn one raw relay message into a typed event.

    Raises
    ------
    MalformedMessage
        If the message has an unknown kind or an invalid payload.
    """
    if not isinstance(raw, dict):
        raise MalformedMessage(f"Relay message must be an object, got {type(raw).__name__}")

    kind = raw.get("kind")
    if isinstance(kind, str) and kind in PresenceKind._value2member_map_:
        presence_kind = PresenceKind(kind)
        entries = parse_presence_entries(
            raw.get("entries"),
            require_joined=presence_kind != PresenceKind.LEAVE,
        )
        return PresenceEvent(presence_kind, tuple(entries))

    payload = raw.get("payload")
    try:
        if kind == SESSION_STATE:
            return StateEvent(SnapshotModel.model_validate(payload).to_snapshot())
        if kind == REQUEST_STATE:
            return StateRequestEvent(StateRequestModel.model_validate(payload).requester_id)
        if kind == RELINQUISH:
            return RelinquishEvent(RelinquishModel.model_validate(payload).participant_id)
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid {kind} payload: {exc}") from exc

    raise MalformedMessage(f"Unknown relay message kind: {kind!r}")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------
def encode_presence_entry(participant: Participant) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": participant.id,
        "joinedAt": participant.joined_at,
        "displayName": participant.display_name,
        "status": str(participant.status),
    }
    if participant.heartbeat_at is not None:
        entry["heartbeatAt"] = participant.heartbeat_at
    return entry


def encode_snapshot(snapshot: StateSnapshot) -> dict[str, Any]:
    state = snapshot.state
    model = SnapshotModel(
        state=SessionStateModel(
            is_playing=state.is_playing,
            practice_kind=state.practice_kind,
            duration_minutes=state.duration_minutes,
            volume=state.volume,
            synchronized_start_epoch=state.synchronized_start_epoch,
            background_audio_ref=state.background_audio_ref,
            elapsed_before_pause=state.elapsed_before_pause,
        ),
        issued_at=snapshot.issued_at,
        sequence=snapshot.sequence,
        issuer_id=snapshot.issuer_id,
    )
    return model.model_dump(mode="json", by_alias=True)


def encode_state_request(requester_id: str) -> dict[str, Any]:
    return StateRequestModel(requester_id=requester_id).model_dump(by_alias=True)


def encode_relinquish(participant_id: str) -> dict[str, Any]:
    return RelinquishModel(participant_id=participant_id).model_dump(by_alias=True)
