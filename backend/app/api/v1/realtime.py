"""
WebSocket endpoint for realtime lifecycle events.

Client → server frames:
    {"action": "join", "userId": 5, "role": "operator"}
    {"action": "acknowledgeAlert", "alertId": 12, "userId": 5}
    {"action": "ping"}

Server → client frames:
    {"event": "roomJoined", "room": null, "payload": {"userId", "role", "rooms", "success"}}
    {"event": "<lifecycle event>", "room": "...", "payload": {...}}
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from backend.app.alerts.broadcaster import STAFF_ROOMS
from backend.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _send(websocket: WebSocket, event: str, payload: dict) -> None:
    await websocket.send_json({"event": event, "room": None, "payload": payload})


async def _handle_frame(websocket: WebSocket, services, raw: str) -> Optional[int]:
    """Process one client frame; returns the user id when the frame was a join."""
    try:
        message = json.loads(raw)
    except ValueError:
        await _send(websocket, "error", {"message": "Frames must be JSON"})
        return None
    if not isinstance(message, dict):
        await _send(websocket, "error", {"message": "Frames must be JSON objects"})
        return None

    action = message.get("action")
    if action == "join":
        user_id = message.get("userId")
        role = message.get("role")
        try:
            user_id = int(user_id) if user_id is not None else None
        except (TypeError, ValueError):
            await _send(websocket, "error", {"message": "userId must be an integer"})
            return None
        rooms = await services.connections.join(websocket, user_id, role)
        await _send(websocket, "roomJoined", {
            "userId": user_id, "role": role, "rooms": rooms, "success": True,
        })
        return user_id

    if action == "acknowledgeAlert":
        await services.broadcaster.emit_to_rooms("alertAcknowledged", {
            "alertId": message.get("alertId"),
            "userId": message.get("userId"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }, STAFF_ROOMS)
    elif action == "ping":
        await _send(websocket, "pong", {})
    else:
        await _send(websocket, "error", {"message": f"Unknown action: {action}"})
    return None


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    services = websocket.app.state.services
    manager = services.connections
    await manager.connect(websocket)
    ws_user: Optional[int] = None

    try:
        while True:
            raw = await websocket.receive_text()
            with log_context(ws_user=ws_user):
                joined = await _handle_frame(websocket, services, raw)
            if joined is not None:
                ws_user = joined
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception as e:
        with log_context(ws_user=ws_user):
            logger.error("WebSocket error: %s", e)
        await manager.disconnect(websocket)


@router.get("/ws/clients")
async def get_client_count(request: Request):
    """Get number of connected WebSocket clients."""
    return {"count": request.app.state.services.connections.client_count}
