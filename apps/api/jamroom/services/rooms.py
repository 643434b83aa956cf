"""Room lifecycle: create, join and leave rooms on the signaling relay."""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlsplit
from uuid import uuid4

from ..core.config import settings
from ..core.errors import (
    DeviceUnavailable,
    InvalidInput,
    JamroomError,
    MediaAccessDenied,
    RoomFull,
    RoomNotFound,
    SignalingUnavailable,
)
from ..schemas.signaling import RoomExists, RoomRejected, RoomRequest, SignalingEvent
from .channel import SignalingChannel
from .media import LocalMedia, MediaAcquirer
from .midi import MidiRelay
from .peers import PeerSessionManager, SessionSnapshot

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[], Any]
MidiFactory = Callable[[Any, str], MidiRelay]
RoomListener = Callable[["RoomSnapshot"], None]


def generate_room_id(style: str | None = None) -> str:
    """Six random digits, or a UUID when ``style`` is ``"uuid"``."""

    if (style or settings.room_id_style) == "uuid":
        return str(uuid4())
    return str(100000 + secrets.randbelow(900000))


def build_room_url(room_id: str, base_url: str | None = None) -> str:
    base = (base_url or settings.public_base_url).rstrip("/")
    return f"{base}?{urlencode({'room': room_id})}"


def room_id_from_url(url: str) -> str | None:
    """Extract the ``room`` query parameter from a shared link."""

    values = parse_qs(urlsplit(url).query).get("room")
    return values[0] if values else None


@dataclass(frozen=True, slots=True)
class RoomSnapshot:
    room_id: str
    room_url: str
    joined: bool
    is_creator: bool
    error: str
    session: SessionSnapshot


class RoomController:
    """Translate create/join/leave intents into signaling interactions."""

    def __init__(
        self,
        *,
        channel_factory: ChannelFactory | None = None,
        media_acquirer: Any | None = None,
        peers: PeerSessionManager | None = None,
        midi_factory: MidiFactory | None = None,
    ) -> None:
        self._channel_factory = channel_factory or SignalingChannel
        self._acquirer = media_acquirer or MediaAcquirer()
        self.peers = peers or PeerSessionManager()
        self._midi_factory = midi_factory
        if midi_factory is None and settings.midi_enabled:
            self._midi_factory = MidiRelay
        self._channel: Any = None
        self._media: LocalMedia | None = None
        self._check_lock = asyncio.Lock()
        self._generation = 0
        self._listeners: list[RoomListener] = []
        self.midi: MidiRelay | None = None
        self.room_id = ""
        self.room_url = ""
        self.joined = False
        self.is_creator = False
        self.error = ""
        self.peers.subscribe(lambda _: self._notify())

    @property
    def channel(self) -> Any:
        return self._channel

    @property
    def media(self) -> LocalMedia | None:
        return self._media

    def snapshot(self) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=self.room_id,
            room_url=self.room_url,
            joined=self.joined,
            is_creator=self.is_creator,
            error=self.error,
            session=self.peers.snapshot(),
        )

    def subscribe(self, listener: RoomListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Room listener failed")

    # -- user intents ----------------------------------------------------------

    async def create_room(self) -> str:
        """Create a room, join it and return its shareable URL."""

        self._clear_error()
        room_id = generate_room_id()
        logger.info("Requesting to create room %s", room_id)
        try:
            channel = await self._ensure_channel()
            self.room_id = room_id
            self.room_url = build_room_url(room_id)
            await channel.emit(SignalingEvent.CREATE_ROOM, RoomRequest(room_id=room_id).wire())
        except JamroomError as exc:
            self._surface(exc)
            raise
        try:
            await self.join_room(room_id)
        except JamroomError:
            if not self.joined and self.room_id == room_id:
                self.room_id = ""
                self.room_url = ""
                self._notify()
            raise
        return self.room_url

    async def join_room(self, room_id: str | None = None) -> None:
        """Join an existing room after confirming it exists and acquiring media."""

        try:
            await self._join((self.room_id if room_id is None else room_id).strip())
        except JamroomError as exc:
            self._surface(exc)
            raise

    async def leave_room(self, *, clear_error: bool = True) -> None:
        """Release media, close every peer and the channel; a no-op when idle."""

        self._generation += 1
        idle = (
            not self.joined
            and self._media is None
            and self._channel is None
            and self.midi is None
            and not self.room_id
        )
        if idle:
            return

        await self._release_session()
        self.room_id = ""
        self.room_url = ""
        self.is_creator = False
        if clear_error:
            self.error = ""
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()
        logger.info("Left room")
        self._notify()

    # -- join flow -------------------------------------------------------------

    async def _join(self, room_id: str) -> None:
        if not room_id:
            raise InvalidInput()
        if self.joined:
            if room_id == self.room_id:
                return
            await self.leave_room()
        generation = self._generation
        self._clear_error()
        logger.info("Attempting to join room %s", room_id)

        try:
            channel = await self._ensure_channel()
            exists = await self._check_room(channel, room_id)
        except SignalingUnavailable:
            if self._superseded(generation):
                return
            raise
        if self._superseded(generation):
            return
        if not exists:
            raise RoomNotFound()

        try:
            media = await self._acquirer.acquire()
        except DeviceUnavailable as exc:
            if self._superseded(generation):
                return
            logger.warning("Media acquisition failed: %s", exc)
            raise MediaAccessDenied() from exc
        if self._superseded(generation):
            media.stop()
            return

        self._media = media
        self.room_id = room_id
        self.peers.attach_local_media(media)
        self.peers.bind(channel)
        outcome = channel.once(SignalingEvent.ALL_USERS, SignalingEvent.ROOM_FULL, SignalingEvent.ROOM_NOT_FOUND)
        try:
            await channel.emit(SignalingEvent.JOIN_ROOM, RoomRequest(room_id=room_id).wire())
            event, data = await asyncio.wait_for(outcome, settings.room_check_timeout)
        except (SignalingUnavailable, asyncio.TimeoutError) as exc:
            if self._superseded(generation):
                return
            await self._release_session()
            raise SignalingUnavailable() from exc
        if self._superseded(generation):
            return

        if event == SignalingEvent.ROOM_FULL.value:
            await self._release_session()
            raise RoomFull(_rejection_message(data, RoomFull.message))
        if event == SignalingEvent.ROOM_NOT_FOUND.value:
            await self._release_session()
            raise RoomNotFound()

        self.joined = True
        if not self.room_url:
            self.room_url = build_room_url(room_id)
        logger.info("Joined room %s as %s", room_id, channel.id)
        await self._open_midi(channel, room_id)
        self._notify()

    def _superseded(self, generation: int) -> bool:
        if generation == self._generation:
            return False
        logger.info("Join abandoned; the room was left while it was in progress")
        return True

    async def _check_room(self, channel: Any, room_id: str) -> bool:
        async with self._check_lock:
            reply = channel.once(SignalingEvent.ROOM_EXISTS)
            await channel.emit(SignalingEvent.CHECK_ROOM, RoomRequest(room_id=room_id).wire())
            try:
                _, data = await asyncio.wait_for(reply, settings.room_check_timeout)
            except asyncio.TimeoutError as exc:
                raise SignalingUnavailable() from exc
        return RoomExists.model_validate(data).exists

    async def _ensure_channel(self) -> Any:
        if self._channel is not None and self._channel.connected:
            return self._channel
        channel = self._channel_factory()
        await channel.connect()
        channel.on(SignalingEvent.ROOM_CREATED, self._on_room_created)
        channel.on(SignalingEvent.ROOM_NOT_FOUND, self._on_room_not_found)
        channel.on(SignalingEvent.ROOM_FULL, self._on_room_full)
        channel.on_disconnect = self._on_channel_lost
        self._channel = channel
        return channel

    async def _open_midi(self, channel: Any, room_id: str) -> None:
        if self._midi_factory is None:
            return
        self.midi = self._midi_factory(channel, room_id)
        await self.midi.open()

    async def _release_session(self) -> None:
        if self._media is not None:
            self._media.stop()
            self._media = None
        if self.midi is not None:
            await self.midi.close()
            self.midi = None
        await self.peers.close_all()
        self.peers.unbind()
        self.joined = False

    def _clear_error(self) -> None:
        if self.error:
            self.error = ""
            self._notify()

    def _surface(self, exc: JamroomError) -> None:
        logger.warning("Room error: %s", exc)
        self.error = str(exc)
        self._notify()

    # -- server-driven events --------------------------------------------------

    def _on_room_created(self, data: Any) -> None:
        request = RoomRequest.model_validate(data)
        if request.room_id == self.room_id:
            logger.info("Room %s created", request.room_id)
            self.is_creator = True
            self._notify()

    async def _on_room_not_found(self, data: Any) -> None:
        if not self.joined:
            return
        self._surface(RoomNotFound())
        await self.leave_room(clear_error=False)

    async def _on_room_full(self, data: Any) -> None:
        if not self.joined:
            return
        self._surface(RoomFull(_rejection_message(data, RoomFull.message)))
        await self.leave_room(clear_error=False)

    def _on_channel_lost(self) -> None:
        self._channel = None
        if self.joined:
            self._surface(SignalingUnavailable())


def _rejection_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        return RoomRejected.model_validate(data).message or default
    return default
