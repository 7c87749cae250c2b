"""Websocket endpoint for the pairing broker."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..core.errors import RoomFull, RoomNotFound
from ..schemas.broker import JoinRoomRequest, SignalRequest
from ..services.broker import BrokerConnection, RoomRegistry

router = APIRouter()

logger = logging.getLogger(__name__)


async def handle_message(registry: RoomRegistry, connection: BrokerConnection, message: object) -> None:
    """Apply one client event to the registry and answer failures on the same socket."""

    if not isinstance(message, dict):
        await connection.send({"type": "error", "message": "Expected a JSON object"})
        return

    event = message.get("type")
    try:
        if event == "join-room":
            join = JoinRoomRequest.model_validate(message)
            await registry.join(join.code, join.role, connection)
        elif event == "signal":
            signal = SignalRequest.model_validate(message)
            await registry.signal(signal.code, connection.connection_id, signal.signal)
        else:
            await connection.send({"type": "error", "message": f"Unknown event: {event}"})
    except ValidationError:
        await connection.send({"type": "error", "message": "Invalid room code"})
    except RoomFull as exc:
        await connection.send({"type": "room-full", "code": exc.code})
    except RoomNotFound as exc:
        await connection.send({"type": "room-not-found", "code": exc.code})


@router.websocket("/ws")
async def broker_endpoint(websocket: WebSocket) -> None:
    """Relay join and signal events between the two members of a room."""

    registry: RoomRegistry = websocket.app.state.registry
    connection_id = uuid4().hex
    await websocket.accept()

    connection = BrokerConnection(connection_id=connection_id, send=websocket.send_json)
    await websocket.send_json({"type": "connected", "connectionId": connection_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await connection.send({"type": "error", "message": "Malformed JSON"})
                continue
            await handle_message(registry, connection, message)
    except WebSocketDisconnect:
        pass
    except Exception:  # noqa: BLE001 - a broken socket must still leave its rooms
        logger.exception("Broker connection %s failed", connection_id)
    finally:
        await registry.disconnect(connection_id)
