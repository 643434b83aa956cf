"""Signaling channel: named events over a persistent websocket."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from contextlib import suppress
from typing import Any, Callable, Dict, List

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.config import settings
from ..core.errors import SignalingUnavailable
from ..schemas.signaling import Envelope, Hello, SignalingEvent

EventName = str | SignalingEvent
Handler = Callable[[Any], Any]

logger = logging.getLogger(__name__)


def _event_name(event: EventName) -> str:
    return event.value if isinstance(event, SignalingEvent) else event


class EventChannel:
    """Subscription and delivery logic shared by every channel transport."""

    def __init__(self) -> None:
        self.id: str | None = None
        self.on_disconnect: Callable[[], None] | None = None
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._waiters: list[tuple[frozenset[str], asyncio.Future[tuple[str, Any]]]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.id is not None and not self._closed

    def on(self, event: EventName, handler: Handler) -> None:
        self._handlers[_event_name(event)].append(handler)

    def off(self, event: EventName, handler: Handler | None = None) -> None:
        name = _event_name(event)
        if handler is None:
            self._handlers.pop(name, None)
            return
        with suppress(ValueError):
            self._handlers[name].remove(handler)

    def once(self, *events: EventName) -> asyncio.Future[tuple[str, Any]]:
        """Return a future resolved by the first of ``events`` to arrive."""

        future: asyncio.Future[tuple[str, Any]] = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(SignalingUnavailable())
            return future
        self._waiters.append((frozenset(_event_name(event) for event in events), future))
        return future

    async def emit(self, event: EventName, data: Any = None) -> None:
        if not self.connected:
            raise SignalingUnavailable()
        name = _event_name(event)
        logger.debug("-> %s", name)
        await self._send({"type": name, "data": data})

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._fail_waiters()
        await self._shutdown()

    async def _send(self, message: dict) -> None:
        raise NotImplementedError

    async def _shutdown(self) -> None:
        """Release the transport."""

    def _deliver(self, event: str, data: Any) -> None:
        logger.debug("<- %s", event)
        pending = []
        for events, future in self._waiters:
            if future.done():
                continue
            if event in events:
                future.set_result((event, data))
            else:
                pending.append((events, future))
        self._waiters = pending

        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
            except Exception:  # noqa: BLE001
                logger.exception("Handler for %s failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Signaling handler failed: %s", exc, exc_info=exc)

    def _fail_waiters(self) -> None:
        for _, future in self._waiters:
            if not future.done():
                future.set_exception(SignalingUnavailable())
        self._waiters = []

    def _lost(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fail_waiters()
        logger.warning("Signaling connection %s lost", self.id)
        if self.on_disconnect is not None:
            self.on_disconnect()


class SignalingChannel(EventChannel):
    """Websocket transport to the signaling relay."""

    def __init__(self, url: str | None = None, *, connect_timeout: float | None = None) -> None:
        super().__init__()
        self._url = url or settings.signaling_url
        self._timeout = connect_timeout or settings.signaling_connect_timeout
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        """Open the socket and wait for the relay to assign our session id."""

        if self.connected:
            return
        try:
            self._ws = await asyncio.wait_for(websockets.connect(self._url), self._timeout)
            raw = await asyncio.wait_for(self._ws.recv(), self._timeout)
            envelope = Envelope.model_validate_json(raw)
            if envelope.type != SignalingEvent.CONNECTED.value:
                raise ValueError(f"expected hello, got {envelope.type!r}")
            hello = Hello.model_validate(envelope.data)
        except (OSError, asyncio.TimeoutError, WebSocketException, ValidationError, ValueError) as exc:
            logger.warning("Could not reach signaling server at %s: %s", self._url, exc)
            await self._shutdown()
            raise SignalingUnavailable() from exc

        self.id = hello.participant_id
        self._closed = False
        self._reader = asyncio.create_task(self._receive_loop())
        logger.info("Connected to signaling server as %s", self.id)

    async def _send(self, message: dict) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            self._lost()
            raise SignalingUnavailable() from exc

    async def _shutdown(self) -> None:
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
        self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    envelope = Envelope.model_validate_json(message)
                except ValidationError:
                    logger.debug("Ignoring malformed frame: %r", message)
                    continue
                self._deliver(envelope.type, envelope.data)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Signaling socket closed: %s", exc)
        self._lost()
