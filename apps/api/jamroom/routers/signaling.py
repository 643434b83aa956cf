"""Signaling relay websocket endpoint."""
from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..schemas.signaling import Envelope
from ..services.relay import SignalingConnection, hub

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Assign a session id, then pump named events into the relay hub."""

    participant_id = str(uuid4())
    await websocket.accept()

    connection = SignalingConnection(connection_id=participant_id, send=websocket.send_json)
    try:
        await hub.register(connection)
        while True:
            message = await websocket.receive_text()
            try:
                frame = Envelope.model_validate_json(message)
            except ValidationError:
                logger.debug("Ignoring malformed frame from %s", participant_id)
                continue
            await hub.handle(participant_id, frame.type, frame.data)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(participant_id)
