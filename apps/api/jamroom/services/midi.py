"""MIDI event relay for the shared note visualizer.

Local hardware notes are mirrored into the active-note state and broadcast to
the room; remote notes arrive as ``remote-midi-message`` and land in the same
state marked as remote. Rendering the keyboard is left to the view.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import mido
from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import SignalingUnavailable
from ..schemas.signaling import MidiMessage, SignalingEvent

logger = logging.getLogger(__name__)

NotesListener = Callable[[Mapping[int, "ActiveNote"]], None]


@dataclass(frozen=True, slots=True)
class ActiveNote:
    is_local: bool
    velocity: int
    participant_id: str | None = None


def reduce_notes(
    notes: Mapping[int, ActiveNote], message: MidiMessage, *, local: bool
) -> dict[int, ActiveNote]:
    """Return the active notes after applying one note event."""

    updated = dict(notes)
    if message.type == "noteon":
        updated[message.note] = ActiveNote(
            is_local=local, velocity=message.velocity, participant_id=message.participant_id
        )
    else:
        updated.pop(message.note, None)
    return updated


def to_midi_message(message: Any, room_id: str | None) -> MidiMessage | None:
    """Convert a ``mido.Message`` to the wire event; ``None`` for non-note messages."""

    if message.type not in ("note_on", "note_off"):
        return None
    # Running-status keyboards send note_on with velocity 0 for releases.
    kind = "noteon" if message.type == "note_on" and message.velocity > 0 else "noteoff"
    return MidiMessage(
        room_id=room_id,
        type=kind,
        note=message.note,
        velocity=message.velocity,
        timestamp=time.monotonic() * 1000,
    )


class MidiRelay:
    """Owns the hardware MIDI inputs for as long as the visualizer is shown.

    Only one relay holds the hardware at a time; opening a new one closes the
    previous owner first.
    """

    _active: Optional["MidiRelay"] = None

    def __init__(
        self,
        channel: Any,
        room_id: str,
        *,
        inputs: list[str] | None = None,
        backend: Any = mido,
    ) -> None:
        self._channel = channel
        self._room_id = room_id
        self._inputs = inputs if inputs is not None else settings.midi_inputs
        self._backend = backend
        self._ports: list[Any] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._listeners: list[NotesListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._open = False
        self.notes: dict[int, ActiveNote] = {}

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def ports(self) -> list[Any]:
        return list(self._ports)

    def subscribe(self, listener: NotesListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def open(self) -> None:
        if self._open:
            return
        previous = MidiRelay._active
        if previous is not None and previous is not self:
            await previous.close()
        MidiRelay._active = self
        self._open = True
        self._loop = asyncio.get_running_loop()
        if self._channel is not None:
            self._channel.on(SignalingEvent.REMOTE_MIDI_MESSAGE, self.handle_remote)

        try:
            names = self._inputs or self._backend.get_input_names()
            for name in names:
                self._ports.append(self._backend.open_input(name, callback=self._from_hardware))
        except (OSError, ImportError) as exc:
            logger.warning(
                "MIDI input unavailable; make sure a device is connected and permissions are granted: %s",
                exc,
            )
        logger.info("MIDI enabled with inputs: %s", [port.name for port in self._ports])

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        for port in self._ports:
            port.callback = None
            port.close()
        self._ports = []
        if self._channel is not None:
            self._channel.off(SignalingEvent.REMOTE_MIDI_MESSAGE, self.handle_remote)
        if MidiRelay._active is self:
            MidiRelay._active = None
        self.notes = {}
        logger.info("MIDI disabled")

    async def __aenter__(self) -> "MidiRelay":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _from_hardware(self, message: Any) -> None:
        # Runs on the MIDI backend thread.
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.handle_local, message)

    def handle_local(self, message: Any) -> None:
        event = to_midi_message(message, self._room_id)
        if event is None or not self._open:
            return
        logger.debug("Local %s note %s velocity %s", event.type, event.note, event.velocity)
        self.notes = reduce_notes(self.notes, event, local=True)
        self._notify()
        if self._channel is not None and self._room_id:
            task = asyncio.ensure_future(self._send(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def handle_remote(self, data: Any) -> None:
        if not self._open:
            return
        try:
            event = MidiMessage.model_validate(data)
        except ValidationError as exc:
            logger.debug("Dropping malformed MIDI message: %s", exc)
            return
        logger.debug("Remote MIDI from %s: %s note %s", event.participant_id, event.type, event.note)
        self.notes = reduce_notes(self.notes, event, local=False)
        self._notify()

    async def _send(self, event: MidiMessage) -> None:
        try:
            await self._channel.emit(SignalingEvent.MIDI_MESSAGE, event.wire())
        except SignalingUnavailable:
            logger.warning("Could not relay MIDI note %s", event.note)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.notes)
            except Exception:  # noqa: BLE001
                logger.exception("MIDI listener failed")
