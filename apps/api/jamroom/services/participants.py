"""Remote participant collection and its state transitions.

Every change to the collection goes through :func:`reduce`, which takes the
current mapping and an action and returns a new mapping. Track arrival and
activity-flag updates merge into an existing entry instead of replacing it,
so the final entry is the same whichever of them arrives first.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

Participants = Mapping[str, "Participant"]


@dataclass(frozen=True, slots=True)
class RemoteMedia:
    """Inbound media handle; remote tracks keyed by kind."""

    tracks: Mapping[str, Any] = field(default_factory=dict)

    @property
    def audio(self) -> Any | None:
        return self.tracks.get("audio")

    @property
    def video(self) -> Any | None:
        return self.tracks.get("video")

    def with_track(self, track: Any) -> "RemoteMedia":
        return RemoteMedia(tracks={**self.tracks, track.kind: track})


@dataclass(frozen=True, slots=True)
class Participant:
    participant_id: str
    media: RemoteMedia | None = None
    video_active: bool = True
    audio_active: bool = True


@dataclass(frozen=True, slots=True)
class TrackArrived:
    participant_id: str
    track: Any


@dataclass(frozen=True, slots=True)
class VideoStateChanged:
    participant_id: str
    enabled: bool


@dataclass(frozen=True, slots=True)
class AudioStateChanged:
    participant_id: str
    enabled: bool


@dataclass(frozen=True, slots=True)
class InitialVideoStates:
    states: Mapping[str, bool]


@dataclass(frozen=True, slots=True)
class InitialAudioStates:
    states: Mapping[str, bool]


@dataclass(frozen=True, slots=True)
class ParticipantLeft:
    participant_id: str


@dataclass(frozen=True, slots=True)
class Cleared:
    pass


Action = (
    TrackArrived
    | VideoStateChanged
    | AudioStateChanged
    | InitialVideoStates
    | InitialAudioStates
    | ParticipantLeft
    | Cleared
)


def reduce(participants: Participants, action: Action) -> dict[str, Participant]:
    """Apply ``action`` and return the resulting collection."""

    updated = dict(participants)

    if isinstance(action, TrackArrived):
        current = updated.get(action.participant_id) or Participant(action.participant_id)
        media = (current.media or RemoteMedia()).with_track(action.track)
        updated[action.participant_id] = replace(current, media=media)
    elif isinstance(action, VideoStateChanged):
        current = updated.get(action.participant_id) or Participant(action.participant_id)
        updated[action.participant_id] = replace(current, video_active=action.enabled)
    elif isinstance(action, AudioStateChanged):
        current = updated.get(action.participant_id) or Participant(action.participant_id)
        updated[action.participant_id] = replace(current, audio_active=action.enabled)
    elif isinstance(action, InitialVideoStates):
        for participant_id, enabled in action.states.items():
            current = updated.get(participant_id) or Participant(participant_id)
            updated[participant_id] = replace(current, video_active=enabled)
    elif isinstance(action, InitialAudioStates):
        for participant_id, enabled in action.states.items():
            current = updated.get(participant_id) or Participant(participant_id)
            updated[participant_id] = replace(current, audio_active=enabled)
    elif isinstance(action, ParticipantLeft):
        updated.pop(action.participant_id, None)
    elif isinstance(action, Cleared):
        updated.clear()
    else:
        raise TypeError(f"Unknown participant action: {action!r}")

    return updated
