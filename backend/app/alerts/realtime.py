"""
realtime.py — Publisher transports for lifecycle events.

    ConnectionManager   in-process WebSocket fan-out with room membership
    RedisPublisher      Redis pub/sub for multi-worker deployments; each
                        worker relays received messages into its local
                        ConnectionManager

Wire format (WebSocket text frame / Redis message):
    {"event": "newAlert", "room": null, "payload": {...}}

Room membership is declared by the client after connecting:
    {"action": "join", "userId": 5, "role": "operator"}
joins ``user-5`` and ``operator``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from backend.app.alerts.broadcaster import user_room

logger = logging.getLogger(__name__)


def encode_event(event: str, payload: Dict[str, Any], room: Optional[str]) -> str:
    return json.dumps({"event": event, "room": room, "payload": payload}, default=str)


# ═══════════════════════════════════════════════════════════════════════════
# WebSocket Connection Manager
# ═══════════════════════════════════════════════════════════════════════════

class ConnectionManager:
    """
    Manages WebSocket connections and their rooms.

    Global events reach every connection; room events only reach
    connections that joined the room.
    """

    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and track new connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info("WebSocket connected. Total: %d", len(self.active_connections))

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a client from every room."""
        async with self._lock:
            self._drop(websocket)
        logger.info("WebSocket disconnected. Total: %d", len(self.active_connections))

    async def join(self, websocket: WebSocket, user_id: Optional[int] = None, role: Optional[str] = None) -> list:
        joined = []
        async with self._lock:
            if user_id is not None:
                self.rooms[user_room(user_id)].add(websocket)
                joined.append(user_room(user_id))
            if role:
                self.rooms[role].add(websocket)
                joined.append(role)
        logger.debug("WebSocket joined rooms %s", joined)
        return joined

    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        data = encode_event(event, payload, room)
        async with self._lock:
            targets = list(self.active_connections) if room is None else list(self.rooms.get(room, ()))
        if not targets:
            return

        # Sent outside the lock so a slow socket never holds up join/connect
        results = await asyncio.gather(
            *(connection.send_text(data) for connection in targets), return_exceptions=True,
        )
        disconnected = [c for c, result in zip(targets, results) if isinstance(result, Exception)]
        if disconnected:
            async with self._lock:
                for connection in disconnected:
                    self._drop(connection)
            logger.info("Dropped %d unreachable WebSocket(s)", len(disconnected))

    def _drop(self, websocket: WebSocket) -> None:
        self.active_connections.discard(websocket)
        for name in list(self.rooms):
            self.rooms[name].discard(websocket)
            if not self.rooms[name]:
                del self.rooms[name]

    @property
    def client_count(self) -> int:
        return len(self.active_connections)


# ═══════════════════════════════════════════════════════════════════════════
# Redis Pub/Sub
# ═══════════════════════════════════════════════════════════════════════════

class RedisPublisher:
    """
    Publish events to Redis channels ``{prefix}:events``.

    ``relay`` subscribes to the same channel and forwards every message
    into a local :class:`ConnectionManager`.
    """

    def __init__(self, client, prefix: str = "alerts"):
        self.client = client
        self.channel = f"{prefix}:events"

    @classmethod
    def from_url(cls, url: str, prefix: str = "alerts") -> "RedisPublisher":
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("Redis publisher connected: %s", url)
        return cls(client, prefix)

    async def publish(self, event: str, payload: Dict[str, Any], room: Optional[str] = None) -> None:
        await self.client.publish(self.channel, encode_event(event, payload, room))

    async def relay(self, manager: ConnectionManager) -> None:
        """Forward subscribed messages to local sockets until cancelled."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (TypeError, ValueError) as exc:
                    logger.warning("Dropping malformed realtime message: %s", exc)
                    continue
                await manager.publish(data.get("event"), data.get("payload") or {}, data.get("room"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    async def close(self) -> None:
        await self.client.aclose()
