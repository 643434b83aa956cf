"""Peer session manager.

Keeps one negotiated connection per remote participant, drives the
offer/answer/ICE exchange through the signaling channel and reconciles
track arrival and activity broadcasts into the remote participant
collection consumed by the presentation layer.

Signaling events for the same participant are handled one at a time
(per-peer lock); events for different participants interleave freely.
Every continuation after an ``await`` re-checks that its peer is still the
current, open entry for that participant and quietly stops otherwise.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.errors import NegotiationFailed, SignalingUnavailable
from ..schemas.signaling import (
    ActivityStates,
    DescriptionMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    ParticipantId,
    ParticipantList,
    RemoteStateChange,
    SessionDescription,
    SignalingEvent,
    StateChange,
)
from . import participants as roster
from .media import LocalMedia

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Any]
SnapshotListener = Callable[["SessionSnapshot"], None]


class PeerState(str, enum.Enum):
    CREATED = "created"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"
    ANSWER_RECEIVED = "answer_received"
    CONNECTED = "connected"
    CLOSED = "closed"


_RANK = {
    PeerState.CREATED: 0,
    PeerState.OFFER_SENT: 1,
    PeerState.OFFER_RECEIVED: 1,
    PeerState.ANSWER_SENT: 2,
    PeerState.ANSWER_RECEIVED: 2,
    PeerState.CONNECTED: 3,
    PeerState.CLOSED: 4,
}


def default_connection_factory() -> RTCPeerConnection:
    """Build an aiortc peer connection using the configured ICE servers."""

    servers = [RTCIceServer(**server) for server in settings.ice_servers()]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


def serialize_candidate(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=f"candidate:{candidate_to_sdp(candidate)}",
        sdp_mid=candidate.sdpMid,
        sdp_m_line_index=candidate.sdpMLineIndex,
    )


def parse_candidate(payload: IceCandidatePayload) -> RTCIceCandidate | None:
    """Turn a browser-style candidate dict into an aiortc candidate."""

    line = payload.candidate.strip()
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        return None
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_m_line_index
    return candidate


@dataclass(eq=False)
class PeerEntry:
    participant_id: str
    connection: Any
    initiator: bool = False
    state: PeerState = PeerState.CREATED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def advance(self, state: PeerState) -> bool:
        """Move forward along the negotiation state machine; never backwards."""

        if _RANK[state] <= _RANK[self.state]:
            return False
        self.state = state
        return True


@dataclass(frozen=True, slots=True)
class LocalState:
    media: LocalMedia | None
    video_active: bool
    audio_active: bool


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    participants: Mapping[str, roster.Participant]
    local: LocalState
    participant_count: int
    peer_states: Mapping[str, PeerState]


class PeerSessionManager:
    """Own the per-participant connections and the remote participant collection."""

    def __init__(
        self,
        connection_factory: ConnectionFactory | None = None,
        *,
        sync_audio_state: bool | None = None,
    ) -> None:
        self._connection_factory = connection_factory or default_connection_factory
        self._sync_audio = settings.sync_audio_state if sync_audio_state is None else sync_audio_state
        self._channel: Any = None
        self._peers: Dict[str, PeerEntry] = {}
        self._participants: Dict[str, roster.Participant] = {}
        self._members: set[str] = set()
        self._departed: set[str] = set()
        self._media: LocalMedia | None = None
        self._video_active = True
        self._audio_active = True
        self._listeners: list[SnapshotListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._routes: Dict[SignalingEvent, tuple[Callable[[Any], Any], Callable[[Any], Awaitable[None]]]] = {
            SignalingEvent.ALL_USERS: (ParticipantList.validate_python, self._on_all_users),
            SignalingEvent.INITIAL_VIDEO_STATES: (ActivityStates.validate_python, self._on_initial_video_states),
            SignalingEvent.INITIAL_AUDIO_STATES: (ActivityStates.validate_python, self._on_initial_audio_states),
            SignalingEvent.USER_JOINED: (ParticipantId.validate_python, self._on_user_joined),
            SignalingEvent.USER_DISCONNECTED: (ParticipantId.validate_python, self._on_user_disconnected),
            SignalingEvent.OFFER: (DescriptionMessage.model_validate, self._on_offer),
            SignalingEvent.ANSWER: (DescriptionMessage.model_validate, self._on_answer),
            SignalingEvent.ICE_CANDIDATE: (IceCandidateMessage.model_validate, self._on_ice_candidate),
            SignalingEvent.REMOTE_VIDEO_STATE_CHANGE: (RemoteStateChange.model_validate, self._on_remote_video_state),
            SignalingEvent.REMOTE_AUDIO_STATE_CHANGE: (RemoteStateChange.model_validate, self._on_remote_audio_state),
        }
        self._bound: Dict[SignalingEvent, Callable[[Any], Awaitable[None]]] = {}

    # -- presentation contract -------------------------------------------------

    @property
    def local_id(self) -> str | None:
        return getattr(self._channel, "id", None)

    @property
    def participants(self) -> Mapping[str, roster.Participant]:
        return self._participants

    @property
    def participant_count(self) -> int:
        return max(1, len(self._members) + 1)

    @property
    def local(self) -> LocalState:
        return LocalState(media=self._media, video_active=self._video_active, audio_active=self._audio_active)

    def peer_ids(self) -> list[str]:
        return list(self._peers)

    def connection(self, participant_id: str) -> Any | None:
        entry = self._peers.get(participant_id)
        return entry.connection if entry else None

    def connection_state(self, participant_id: str) -> PeerState | None:
        entry = self._peers.get(participant_id)
        return entry.state if entry else None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            participants=dict(self._participants),
            local=self.local,
            participant_count=self.participant_count,
            peer_states={pid: entry.state for pid, entry in self._peers.items()},
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""

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
                logger.exception("Snapshot listener failed")

    # -- wiring ----------------------------------------------------------------

    def bind(self, channel: Any) -> None:
        """Route the manager's signaling events from ``channel``."""

        self.unbind()
        self._channel = channel
        for event in self._routes:
            handler = self._make_handler(event)
            self._bound[event] = handler
            channel.on(event, handler)

    def unbind(self) -> None:
        if self._channel is not None:
            for event, handler in self._bound.items():
                self._channel.off(event, handler)
        self._bound = {}
        self._channel = None

    def _make_handler(self, event: SignalingEvent) -> Callable[[Any], Awaitable[None]]:
        async def handler(data: Any) -> None:
            await self.dispatch(event, data)

        return handler

    def attach_local_media(self, media: LocalMedia | None) -> None:
        self._media = media
        if media is not None:
            self._video_active = media.is_enabled("video")
            self._audio_active = media.is_enabled("audio")
        self._notify()

    async def dispatch(self, event: SignalingEvent | str, data: Any) -> None:
        """Parse ``data`` for ``event`` and run its handler."""

        try:
            event = SignalingEvent(event)
            parse, handle = self._routes[event]
        except (ValueError, KeyError):
            logger.debug("No peer handler for %s", event)
            return
        try:
            payload = parse(data) if not isinstance(data, BaseModel) else data
        except (ValidationError, TypeError, ValueError) as exc:
            logger.warning("Dropping malformed %s payload: %s", event.value, exc)
            return
        await handle(payload)

    # -- membership ------------------------------------------------------------

    async def _on_all_users(self, users: list[str]) -> None:
        remote = [user for user in users if user != self.local_id]
        logger.info("Room occupants: %s", remote)
        self._members = set(remote)
        self._departed.difference_update(remote)
        entries = [self._open_peer(user, initiator=True) for user in remote]
        self._notify()
        await asyncio.gather(*(self._call(entry) for entry in entries))

    async def _call(self, entry: PeerEntry) -> None:
        async with entry.lock:
            await self._guarded(entry, self._send_offer)

    async def _on_user_joined(self, participant_id: str) -> None:
        if participant_id == self.local_id:
            return
        logger.info("User joined: %s", participant_id)
        self._members.add(participant_id)
        self._departed.discard(participant_id)
        if participant_id not in self._peers:
            self._open_peer(participant_id, initiator=False)
        self._notify()

    async def _on_user_disconnected(self, participant_id: str) -> None:
        logger.info("User disconnected: %s", participant_id)
        await self._remove_participant(participant_id)

    # -- negotiation -----------------------------------------------------------

    async def _on_offer(self, message: DescriptionMessage) -> None:
        caller = message.caller
        if not caller or caller == self.local_id:
            return
        entry = self._peers.get(caller)
        if entry is None:
            logger.info("Offer from unknown peer %s; creating connection", caller)
            self._members.add(caller)
            self._departed.discard(caller)
            entry = self._open_peer(caller, initiator=False)
            self._notify()
        async with entry.lock:
            if entry.state is not PeerState.CREATED:
                logger.debug("Ignoring offer from %s in state %s", caller, entry.state.value)
                return
            await self._guarded(entry, self._send_answer, message.sdp)

    async def _on_answer(self, message: DescriptionMessage) -> None:
        entry = self._peers.get(message.caller or "")
        if entry is None:
            logger.debug("Dropping answer from unknown peer %s", message.caller)
            return
        async with entry.lock:
            if entry.state is not PeerState.OFFER_SENT:
                logger.debug("Ignoring answer from %s in state %s", entry.participant_id, entry.state.value)
                return
            await self._guarded(entry, self._apply_answer, message.sdp)

    async def _on_ice_candidate(self, message: IceCandidateMessage) -> None:
        entry = self._peers.get(message.sender or "")
        if entry is None or message.candidate is None:
            logger.debug("Dropping candidate from %s", message.sender)
            return
        async with entry.lock:
            await self._guarded(entry, self._add_candidate, message.candidate)

    async def _send_offer(self, entry: PeerEntry) -> None:
        connection = entry.connection
        offer = await connection.createOffer()
        if not self._is_current(entry):
            return
        await connection.setLocalDescription(offer)
        if not self._is_current(entry):
            return
        entry.advance(PeerState.OFFER_SENT)
        await self._emit(
            SignalingEvent.OFFER,
            DescriptionMessage(
                target=entry.participant_id,
                caller=self.local_id,
                sdp=_describe(connection.localDescription),
            ).wire(),
        )
        logger.debug("Sent offer to %s", entry.participant_id)

    async def _send_answer(self, entry: PeerEntry, sdp: SessionDescription) -> None:
        connection = entry.connection
        await connection.setRemoteDescription(RTCSessionDescription(sdp=sdp.sdp, type=sdp.type))
        if not self._is_current(entry):
            return
        entry.advance(PeerState.OFFER_RECEIVED)
        answer = await connection.createAnswer()
        if not self._is_current(entry):
            return
        await connection.setLocalDescription(answer)
        if not self._is_current(entry):
            return
        entry.advance(PeerState.ANSWER_SENT)
        await self._emit(
            SignalingEvent.ANSWER,
            DescriptionMessage(
                target=entry.participant_id,
                caller=self.local_id,
                sdp=_describe(connection.localDescription),
            ).wire(),
        )
        logger.debug("Sent answer to %s", entry.participant_id)

    async def _apply_answer(self, entry: PeerEntry, sdp: SessionDescription) -> None:
        await entry.connection.setRemoteDescription(RTCSessionDescription(sdp=sdp.sdp, type=sdp.type))
        if self._is_current(entry):
            entry.advance(PeerState.ANSWER_RECEIVED)

    async def _add_candidate(self, entry: PeerEntry, payload: IceCandidatePayload) -> None:
        candidate = parse_candidate(payload)
        if candidate is not None:
            await entry.connection.addIceCandidate(candidate)

    async def _guarded(self, entry: PeerEntry, step: Callable[..., Awaitable[None]], *args: Any) -> None:
        """Run a negotiation step, containing any failure to this one peer."""

        try:
            await step(entry, *args)
        except Exception as exc:  # noqa: BLE001
            if not self._is_current(entry):
                logger.debug("Peer %s closed during %s", entry.participant_id, step.__name__)
                return
            failure = NegotiationFailed(entry.participant_id, str(exc))
            logger.warning("%s; closing connection", failure)
            await self._remove_participant(entry.participant_id)

    # -- connection lifecycle --------------------------------------------------

    def _is_current(self, entry: PeerEntry) -> bool:
        return entry.state is not PeerState.CLOSED and self._peers.get(entry.participant_id) is entry

    def _open_peer(self, participant_id: str, *, initiator: bool) -> PeerEntry:
        stale = self._peers.pop(participant_id, None)
        if stale is not None:
            logger.info("Replacing stale connection for %s", participant_id)
            stale.state = PeerState.CLOSED
            self._spawn(self._close_connection(stale))

        connection = self._connection_factory()
        entry = PeerEntry(participant_id=participant_id, connection=connection, initiator=initiator)
        self._peers[participant_id] = entry
        if self._media is not None:
            for track in self._media.tracks():
                connection.addTrack(track)
        else:
            logger.warning("No local media available when creating peer for %s", participant_id)

        @connection.on("icecandidate")
        async def on_icecandidate(candidate: RTCIceCandidate | None) -> None:
            if candidate is None or not self._is_current(entry):
                return
            try:
                await self._emit(
                    SignalingEvent.ICE_CANDIDATE,
                    IceCandidateMessage(target=participant_id, candidate=serialize_candidate(candidate)).wire(),
                )
            except SignalingUnavailable:
                logger.warning("Could not forward ICE candidate to %s", participant_id)

        @connection.on("track")
        def on_track(track: Any) -> None:
            if not self._is_current(entry):
                return
            logger.info("Received %s track from %s", track.kind, participant_id)
            self._participants = roster.reduce(self._participants, roster.TrackArrived(participant_id, track))
            self._notify()

        @connection.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = connection.connectionState
            logger.debug("Connection state with %s: %s", participant_id, state)
            if not self._is_current(entry):
                return
            if state == "connected":
                entry.advance(PeerState.CONNECTED)
                self._notify()
            elif state in ("failed", "closed"):
                logger.warning("Connection with %s %s", participant_id, state)
                await self._remove_participant(participant_id)

        return entry

    async def _remove_participant(self, participant_id: str) -> None:
        """Forget a remote participant; late state for them is ignored until they rejoin."""

        self._members.discard(participant_id)
        self._departed.add(participant_id)
        entry = self._peers.get(participant_id)
        if entry is not None:
            await self._drop_peer(entry)
        self._participants = roster.reduce(self._participants, roster.ParticipantLeft(participant_id))
        self._notify()

    async def _drop_peer(self, entry: PeerEntry) -> None:
        if self._peers.get(entry.participant_id) is entry:
            del self._peers[entry.participant_id]
        if entry.state is PeerState.CLOSED:
            return
        entry.state = PeerState.CLOSED
        await self._close_connection(entry)

    async def _close_connection(self, entry: PeerEntry) -> None:
        try:
            await entry.connection.close()
        except Exception:  # noqa: BLE001
            logger.exception("Error closing connection to %s", entry.participant_id)

    async def close_all(self) -> None:
        """Close every connection and forget all remote state."""

        entries = list(self._peers.values())
        self._peers.clear()
        for entry in entries:
            entry.state = PeerState.CLOSED
        await asyncio.gather(*(self._close_connection(entry) for entry in entries))
        self._participants = roster.reduce(self._participants, roster.Cleared())
        self._members.clear()
        self._departed.clear()
        self._media = None
        self._video_active = True
        self._audio_active = True
        if entries:
            logger.info("Closed %d peer connection(s)", len(entries))
        self._notify()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _emit(self, event: SignalingEvent, data: Any) -> None:
        if self._channel is None:
            raise SignalingUnavailable()
        await self._channel.emit(event, data)

    # -- activity flags --------------------------------------------------------

    async def _on_initial_video_states(self, states: dict[str, bool]) -> None:
        known = self._remote_only(states)
        self._participants = roster.reduce(self._participants, roster.InitialVideoStates(known))
        self._notify()

    async def _on_initial_audio_states(self, states: dict[str, bool]) -> None:
        known = self._remote_only(states)
        self._participants = roster.reduce(self._participants, roster.InitialAudioStates(known))
        self._notify()

    async def _on_remote_video_state(self, message: RemoteStateChange) -> None:
        if self._accepts_state(message.participant_id):
            logger.debug("Remote video for %s -> %s", message.participant_id, message.enabled)
            self._participants = roster.reduce(
                self._participants, roster.VideoStateChanged(message.participant_id, message.enabled)
            )
            self._notify()

    async def _on_remote_audio_state(self, message: RemoteStateChange) -> None:
        if self._accepts_state(message.participant_id):
            logger.debug("Remote audio for %s -> %s", message.participant_id, message.enabled)
            self._participants = roster.reduce(
                self._participants, roster.AudioStateChanged(message.participant_id, message.enabled)
            )
            self._notify()

    def _remote_only(self, states: Mapping[str, bool]) -> dict[str, bool]:
        return {pid: enabled for pid, enabled in states.items() if self._accepts_state(pid)}

    def _accepts_state(self, participant_id: str) -> bool:
        return participant_id != self.local_id and participant_id not in self._departed

    async def set_video_enabled(self, enabled: bool) -> None:
        if self._media is None:
            return
        self._media.set_enabled("video", enabled)
        self._video_active = enabled
        self._notify()
        await self._broadcast_state(SignalingEvent.VIDEO_STATE_CHANGE, enabled)

    async def set_audio_enabled(self, enabled: bool) -> None:
        if self._media is None:
            return
        self._media.set_enabled("audio", enabled)
        self._audio_active = enabled
        self._notify()
        if self._sync_audio:
            await self._broadcast_state(SignalingEvent.AUDIO_STATE_CHANGE, enabled)

    async def toggle_video(self) -> bool:
        await self.set_video_enabled(not self._video_active)
        return self._video_active

    async def toggle_audio(self) -> bool:
        await self.set_audio_enabled(not self._audio_active)
        return self._audio_active

    async def _broadcast_state(self, event: SignalingEvent, enabled: bool) -> None:
        if self._channel is None:
            return
        await self._emit(event, StateChange(enabled=enabled).wire())

    def replace_local_track(self, kind: str, source: Any) -> None:
        """Swap a capture device on every open connection without renegotiating."""

        if self._media is None:
            raise RuntimeError("No local media to replace")
        outbound = self._media.replace_source(kind, source)
        for entry in list(self._peers.values()):
            for sender in entry.connection.getSenders():
                if sender.track is not None and sender.track.kind == kind:
                    sender.replaceTrack(outbound)
        logger.info("Replaced local %s track on %d connection(s)", kind, len(self._peers))


def _describe(description: Any) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)
