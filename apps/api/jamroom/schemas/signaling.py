"""Wire contracts for the signaling protocol."""
from __future__ import annotations

import enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class SignalingEvent(str, enum.Enum):
    CONNECTED = "connected"
    CREATE_ROOM = "create-room"
    ROOM_CREATED = "room-created"
    CHECK_ROOM = "check-room"
    ROOM_EXISTS = "room-exists"
    JOIN_ROOM = "join-room"
    ALL_USERS = "all-users"
    INITIAL_VIDEO_STATES = "initial-video-states"
    INITIAL_AUDIO_STATES = "initial-audio-states"
    USER_JOINED = "user-joined"
    USER_DISCONNECTED = "user-disconnected"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    VIDEO_STATE_CHANGE = "videoStateChange"
    AUDIO_STATE_CHANGE = "audioStateChange"
    REMOTE_VIDEO_STATE_CHANGE = "remoteVideoStateChange"
    REMOTE_AUDIO_STATE_CHANGE = "remoteAudioStateChange"
    ROOM_NOT_FOUND = "room-not-found"
    ROOM_FULL = "room-full"
    MIDI_MESSAGE = "midi-message"
    REMOTE_MIDI_MESSAGE = "remote-midi-message"


class WireModel(BaseModel):
    """Base for camelCase payloads that also accept snake_case names."""

    model_config = ConfigDict(populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Envelope(BaseModel):
    type: str = Field(..., description="Signaling event name")
    data: Any = Field(default=None, description="Event payload")


class Hello(WireModel):
    participant_id: str = Field(..., alias="participantId")


class RoomRequest(WireModel):
    room_id: str = Field(..., alias="roomId", min_length=1)


class RoomExists(WireModel):
    exists: bool


class RoomRejected(WireModel):
    room_id: str | None = Field(default=None, alias="roomId")
    message: str | None = None


class SessionDescription(WireModel):
    type: str
    sdp: str


class DescriptionMessage(WireModel):
    """Offer or answer addressed to ``target``; the relay stamps ``caller``."""

    sdp: SessionDescription
    target: str | None = None
    caller: str | None = None


class IceCandidatePayload(WireModel):
    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_m_line_index: int | None = Field(default=None, alias="sdpMLineIndex")


class IceCandidateMessage(WireModel):
    candidate: IceCandidatePayload | None = None
    target: str | None = None
    sender: str | None = Field(default=None, alias="from")


class StateChange(WireModel):
    enabled: bool = Field(
        ...,
        validation_alias=AliasChoices("enabled", "videoEnabled", "audioEnabled"),
    )


class RemoteStateChange(WireModel):
    participant_id: str = Field(
        ...,
        validation_alias=AliasChoices("participantId", "participant_id", "userId"),
        serialization_alias="participantId",
    )
    enabled: bool = Field(
        ...,
        validation_alias=AliasChoices("enabled", "videoEnabled", "audioEnabled"),
    )


class MidiMessage(WireModel):
    room_id: str | None = Field(default=None, alias="roomId")
    type: Literal["noteon", "noteoff"]
    note: int = Field(..., ge=0, le=127)
    velocity: int = Field(default=0, ge=0, le=127)
    timestamp: float = Field(default=0.0)
    participant_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("participantId", "participant_id", "userId"),
        serialization_alias="participantId",
    )


ParticipantList = TypeAdapter(list[str])
ActivityStates = TypeAdapter(dict[str, bool])
ParticipantId = TypeAdapter(str)
