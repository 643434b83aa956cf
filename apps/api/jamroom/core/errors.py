"""Error taxonomy shared by the room controller and peer session manager."""
from __future__ import annotations


class JamroomError(RuntimeError):
    """Base class for user-visible conferencing errors."""

    message = "Something went wrong."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidInput(JamroomError):
    message = "Please enter a Room ID"


class RoomNotFound(JamroomError):
    message = "This room does not exist. Please check the Room ID or create a new room."


class RoomFull(JamroomError):
    message = "Room is full."


class MediaAccessDenied(JamroomError):
    message = "Failed to get camera/microphone access. Please ensure permissions are granted."


class SignalingUnavailable(JamroomError):
    message = "Failed to connect to the server. Please check if the server is running."


class NegotiationFailed(JamroomError):
    """Raised when offer, answer or candidate handling fails for one peer."""

    def __init__(self, participant_id: str, reason: str = "") -> None:
        self.participant_id = participant_id
        detail = f": {reason}" if reason else ""
        super().__init__(f"Negotiation with {participant_id} failed{detail}")


class DeviceUnavailable(RuntimeError):
    """Raised by media acquisition when capture devices cannot be opened."""
