"""
WebSocket fan-out of listing cache changes to UI clients.

Product grids connect to the "listings" room and receive every ListingEvent
the sync service emits, so a removal or advisory change shows up without
waiting for the client's next HTTP poll.

Usage:
    from web.websocket_manager import manager

    conn = await manager.connect(websocket)
    await manager.broadcast(LISTINGS_ROOM, "listings.replaced", {"count": 10})
"""
import asyncio
import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import WebSocket

from iskomarket.observability import get_logger

logger = get_logger(__name__)

LISTINGS_ROOM = "listings"


class WebSocketEvent(Enum):
    """Connection-level events; listing events are sent under their ListingEvent value."""

    CONNECTED = "connected"
    PONG = "pong"


@dataclass
class ConnectionInfo:
    id: int
    websocket: WebSocket
    room: str
    connected_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    message_count: int = 0


def _encode(event: Union[WebSocketEvent, str], data: Dict[str, Any]) -> str:
    name = event.value if isinstance(event, WebSocketEvent) else event
    return json.dumps(
        {"event": name, "data": data, "timestamp": datetime.now().isoformat()},
        default=str,
    )


class ConnectionManager:
    """
    Room-based registry of open client sockets.

    A socket that fails a send is dropped from its room on the spot.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[int, ConnectionInfo]] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._total_connections = 0
        self._total_messages_sent = 0

    async def connect(self, websocket: WebSocket, room: str = LISTINGS_ROOM) -> ConnectionInfo:
        await websocket.accept()
        async with self._lock:
            conn = ConnectionInfo(id=next(self._ids), websocket=websocket, room=room)
            self._rooms.setdefault(room, {})[conn.id] = conn
            self._total_connections += 1

        logger.info(f"Client {conn.id} joined '{room}' ({self.connection_count(room)} connected)")
        await self._send(conn, _encode(WebSocketEvent.CONNECTED, {
            "room": room,
            "timestamp": conn.connected_at.isoformat(),
        }))
        return conn

    async def disconnect(self, conn: ConnectionInfo) -> None:
        async with self._lock:
            members = self._rooms.get(conn.room)
            if members is None or members.pop(conn.id, None) is None:
                return
            if not members:
                del self._rooms[conn.room]
        logger.info(f"Client {conn.id} left '{conn.room}' ({self.connection_count(conn.room)} connected)")

    async def broadcast(self, room: str, event: Union[WebSocketEvent, str], data: Dict[str, Any]) -> int:
        """Send one event to every socket in a room; returns how many received it."""
        async with self._lock:
            targets = list(self._rooms.get(room, {}).values())
        if not targets:
            return 0

        message = _encode(event, data)
        delivered = await asyncio.gather(*[self._send(conn, message) for conn in targets])
        for conn, ok in zip(targets, delivered):
            if not ok:
                await self.disconnect(conn)

        sent = sum(delivered)
        self._total_messages_sent += sent
        return sent

    async def _send(self, conn: ConnectionInfo, message: str) -> bool:
        try:
            await conn.websocket.send_text(message)
        except (RuntimeError, OSError) as e:
            logger.debug(f"Send to client {conn.id} failed: {e}")
            return False
        conn.last_activity = datetime.now()
        conn.message_count += 1
        return True

    async def handle_message(self, conn: ConnectionInfo, message: str) -> None:
        """Clients only ever send keep-alives: "ping" or {"action": "ping"}."""
        conn.last_activity = datetime.now()
        if message != "ping":
            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                return
            if not isinstance(payload, dict) or payload.get("action") != "ping":
                return
        await self._send(conn, _encode(WebSocketEvent.PONG, {"timestamp": datetime.now().isoformat()}))

    def connection_count(self, room: Optional[str] = None) -> int:
        if room is not None:
            return len(self._rooms.get(room, {}))
        return sum(map(len, self._rooms.values()))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_connections": self.connection_count(),
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
            "rooms": {room: len(members) for room, members in self._rooms.items()},
        }


manager = ConnectionManager()
