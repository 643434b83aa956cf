"""In-memory signaling relay: room membership and addressed message fan-out."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from ..core.config import settings
from ..schemas.signaling import (
    DescriptionMessage,
    IceCandidateMessage,
    MidiMessage,
    RemoteStateChange,
    RoomExists,
    RoomRejected,
    RoomRequest,
    SignalingEvent,
    StateChange,
)

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


def envelope(event: SignalingEvent, data: Any = None) -> dict:
    return {"type": event.value, "data": data}


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


@dataclass(slots=True)
class Member:
    connection: SignalingConnection
    video_enabled: bool = True
    audio_enabled: bool = True


@dataclass(slots=True)
class Room:
    room_id: str
    created_by: str | None = None
    members: Dict[str, Member] = field(default_factory=dict)


Outbox = list[tuple[SignalingConnection, dict]]


class RelayHub:
    """Manage signaling rooms and route messages between participants."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = capacity
        self._connections: Dict[str, SignalingConnection] = {}
        self._rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._routes: Dict[str, Callable[[str, Any], Awaitable[Outbox]]] = {
            SignalingEvent.CREATE_ROOM.value: self._create_room,
            SignalingEvent.CHECK_ROOM.value: self._check_room,
            SignalingEvent.JOIN_ROOM.value: self._join_room,
            SignalingEvent.OFFER.value: partial(self._relay_description, SignalingEvent.OFFER),
            SignalingEvent.ANSWER.value: partial(self._relay_description, SignalingEvent.ANSWER),
            SignalingEvent.ICE_CANDIDATE.value: self._relay_candidate,
            SignalingEvent.VIDEO_STATE_CHANGE.value: self._video_state,
            SignalingEvent.AUDIO_STATE_CHANGE.value: self._audio_state,
            SignalingEvent.MIDI_MESSAGE.value: self._midi_message,
        }

    def rooms(self) -> dict[str, list[str]]:
        """Room id to member ids, for inspection."""

        return {room_id: list(room.members) for room_id, room in self._rooms.items()}

    async def register(self, connection: SignalingConnection) -> None:
        async with self._lock:
            self._connections[connection.connection_id] = connection
        hello = envelope(SignalingEvent.CONNECTED, {"participantId": connection.connection_id})
        await self._deliver([(connection, hello)])

    async def disconnect(self, connection_id: str) -> None:
        """Drop a connection, leave its room and destroy rooms left empty."""

        async with self._lock:
            self._connections.pop(connection_id, None)
            outbox = self._leave(connection_id)
            for room_id, room in list(self._rooms.items()):
                if room.created_by == connection_id and not room.members:
                    self._rooms.pop(room_id, None)
        await self._deliver(outbox)

    async def handle(self, connection_id: str, event: str, data: Any) -> None:
        """Process one inbound frame from ``connection_id``."""

        route = self._routes.get(event)
        if route is None:
            logger.debug("Ignoring unknown event %r from %s", event, connection_id)
            return
        try:
            outbox = await route(connection_id, data)
        except ValidationError as exc:
            logger.debug("Ignoring malformed %s from %s: %s", event, connection_id, exc)
            return
        await self._deliver(outbox)

    async def _create_room(self, sender: str, data: Any) -> Outbox:
        request = RoomRequest.model_validate(data)
        async with self._lock:
            self._rooms.setdefault(request.room_id, Room(request.room_id, created_by=sender))
            connection = self._connections.get(sender)
        logger.info("Room %s created by %s", request.room_id, sender)
        if connection is None:
            return []
        return [(connection, envelope(SignalingEvent.ROOM_CREATED, request.wire()))]

    async def _check_room(self, sender: str, data: Any) -> Outbox:
        request = RoomRequest.model_validate(data)
        async with self._lock:
            exists = request.room_id in self._rooms
            connection = self._connections.get(sender)
        if connection is None:
            return []
        return [(connection, envelope(SignalingEvent.ROOM_EXISTS, RoomExists(exists=exists).wire()))]

    async def _join_room(self, sender: str, data: Any) -> Outbox:
        request = RoomRequest.model_validate(data)
        async with self._lock:
            connection = self._connections.get(sender)
            if connection is None:
                return []
            room = self._rooms.get(request.room_id)
            if room is None:
                rejection = RoomRejected(room_id=request.room_id, message="Room not found.")
                return [(connection, envelope(SignalingEvent.ROOM_NOT_FOUND, rejection.wire()))]
            if sender in room.members:
                return []
            if self.capacity is not None and len(room.members) >= self.capacity:
                logger.info("Rejecting %s: room %s is full", sender, room.room_id)
                rejection = RoomRejected(
                    room_id=room.room_id,
                    message=f"Room is full. Only {self.capacity} participants are allowed.",
                )
                return [(connection, envelope(SignalingEvent.ROOM_FULL, rejection.wire()))]

            outbox = self._leave(sender)
            others = dict(room.members)
            room.members[sender] = Member(connection)
            self._membership[sender] = room.room_id

        logger.info("%s joined room %s (%d present)", sender, room.room_id, len(others) + 1)
        outbox += [
            (connection, envelope(SignalingEvent.ALL_USERS, list(others))),
            (
                connection,
                envelope(
                    SignalingEvent.INITIAL_VIDEO_STATES,
                    {pid: member.video_enabled for pid, member in others.items()},
                ),
            ),
            (
                connection,
                envelope(
                    SignalingEvent.INITIAL_AUDIO_STATES,
                    {pid: member.audio_enabled for pid, member in others.items()},
                ),
            ),
        ]
        outbox += [
            (member.connection, envelope(SignalingEvent.USER_JOINED, sender)) for member in others.values()
        ]
        return outbox

    async def _relay_description(self, event: SignalingEvent, sender: str, data: Any) -> Outbox:
        message = DescriptionMessage.model_validate(data)
        target = await self._peer_of(sender, message.target)
        if target is None:
            return []
        relayed = message.model_copy(update={"caller": sender})
        return [(target, envelope(event, relayed.wire()))]

    async def _relay_candidate(self, sender: str, data: Any) -> Outbox:
        message = IceCandidateMessage.model_validate(data)
        target = await self._peer_of(sender, message.target)
        if target is None:
            return []
        relayed = message.model_copy(update={"sender": sender})
        return [(target, envelope(SignalingEvent.ICE_CANDIDATE, relayed.wire()))]

    async def _video_state(self, sender: str, data: Any) -> Outbox:
        change = StateChange.model_validate(data)
        return await self._update_state(sender, change.enabled, video=True)

    async def _audio_state(self, sender: str, data: Any) -> Outbox:
        change = StateChange.model_validate(data)
        return await self._update_state(sender, change.enabled, video=False)

    async def _update_state(self, sender: str, enabled: bool, *, video: bool) -> Outbox:
        async with self._lock:
            room = self._room_of(sender)
            if room is None:
                return []
            member = room.members[sender]
            if video:
                member.video_enabled = enabled
            else:
                member.audio_enabled = enabled
            others = [m.connection for pid, m in room.members.items() if pid != sender]
        event = SignalingEvent.REMOTE_VIDEO_STATE_CHANGE if video else SignalingEvent.REMOTE_AUDIO_STATE_CHANGE
        payload = RemoteStateChange(participant_id=sender, enabled=enabled).wire()
        return [(connection, envelope(event, payload)) for connection in others]

    async def _midi_message(self, sender: str, data: Any) -> Outbox:
        message = MidiMessage.model_validate(data)
        async with self._lock:
            room = self._room_of(sender)
            if room is None:
                return []
            others = [m.connection for pid, m in room.members.items() if pid != sender]
        relayed = message.model_copy(update={"participant_id": sender, "room_id": room.room_id})
        return [(connection, envelope(SignalingEvent.REMOTE_MIDI_MESSAGE, relayed.wire())) for connection in others]

    async def _peer_of(self, sender: str, target: str | None) -> SignalingConnection | None:
        """Resolve ``target`` when it shares a room with ``sender``."""

        async with self._lock:
            room = self._room_of(sender)
            if room is None or target not in room.members:
                logger.debug("Dropping message from %s to %s outside its room", sender, target)
                return None
            return room.members[target].connection

    def _room_of(self, connection_id: str) -> Room | None:
        room_id = self._membership.get(connection_id)
        return self._rooms.get(room_id) if room_id else None

    def _leave(self, connection_id: str) -> Outbox:
        """Remove a member from its room; caller holds the lock."""

        room = self._room_of(connection_id)
        self._membership.pop(connection_id, None)
        if room is None:
            return []
        room.members.pop(connection_id, None)
        if not room.members:
            self._rooms.pop(room.room_id, None)
            logger.info("Room %s closed", room.room_id)
            return []
        return [
            (member.connection, envelope(SignalingEvent.USER_DISCONNECTED, connection_id))
            for member in room.members.values()
        ]

    async def _deliver(self, outbox: Outbox) -> None:
        for connection, message in outbox:
            try:
                await connection.send(message)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Send to %s failed: %s", connection.connection_id, exc)


hub = RelayHub(capacity=settings.room_capacity)
