"""
WebSocket Connection Manager

Manages WebSocket connections for live sync progress.
Supports:
- Rooms (``tenant:{tenantId}``, ``sync:{syncRunId}``)
- Joining and leaving rooms after connect
- Broadcasting a typed event to a room
- Connection heartbeat tracking
"""

from fastapi import WebSocket
from typing import Dict, Iterable, Set
from datetime import datetime
import logging
import asyncio

from segmentflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


def tenant_room(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def sync_room(sync_run_id: str) -> str:
    return f"sync:{sync_run_id}"


class ConnectionManager:
    """
    Manages WebSocket connections and room broadcasting.

    Every connection belongs to one tenant and starts in that tenant's room.
    It may additionally join ``sync:{runId}`` rooms to follow single runs.
    """

    def __init__(self):
        # Maps room name to the connections in it
        self._rooms: Dict[str, Set[WebSocket]] = {}
        # Maps WebSocket to the rooms it joined, for cleanup on disconnect
        self._memberships: Dict[WebSocket, Set[str]] = {}
        # Maps WebSocket to its tenant
        self._tenants: Dict[WebSocket, str] = {}
        # Heartbeat tracking: WebSocket -> last ping timestamp
        self._heartbeats: Dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, tenant_id: str, rooms: Iterable[str] = ()) -> None:
        """
        Accept a WebSocket connection and put it in its tenant room.

        Args:
            websocket: The WebSocket connection to register
            tenant_id: Tenant the connection is scoped to
            rooms: Extra rooms to join right away
        """
        await websocket.accept()

        async with self._lock:
            self._tenants[websocket] = tenant_id
            self._heartbeats[websocket] = utcnow()
            self._memberships[websocket] = set()
            for room in (tenant_room(tenant_id), *rooms):
                self._join(websocket, room)

        logger.info(
            f"WebSocket connected: tenant_id={tenant_id}, "
            f"total_connections={self.total_connections}"
        )

    def _join(self, websocket: WebSocket, room: str) -> None:
        self._rooms.setdefault(room, set()).add(websocket)
        self._memberships.setdefault(websocket, set()).add(room)

    async def join(self, websocket: WebSocket, room: str) -> bool:
        """Join a room. Only rooms of the connection's own tenant or sync rooms are allowed."""
        tenant_id = self._tenants.get(websocket)
        if tenant_id is None:
            return False
        if room.startswith("tenant:") and room != tenant_room(tenant_id):
            logger.warning(f"Rejected join of {room} by connection of tenant {tenant_id}")
            return False
        async with self._lock:
            self._join(websocket, room)
        return True

    def leave(self, websocket: WebSocket, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._rooms[room]
        self._memberships.get(websocket, set()).discard(room)

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection from every room."""
        for room in list(self._memberships.get(websocket, ())):
            self.leave(websocket, room)

        self._memberships.pop(websocket, None)
        tenant_id = self._tenants.pop(websocket, None)
        self._heartbeats.pop(websocket, None)

        logger.info(
            f"WebSocket disconnected: tenant_id={tenant_id}, "
            f"total_connections={self.total_connections}"
        )

    def update_heartbeat(self, websocket: WebSocket) -> None:
        """Update the heartbeat timestamp for a connection."""
        self._heartbeats[websocket] = utcnow()

    @property
    def total_connections(self) -> int:
        return len(self._tenants)

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def send_to_room(self, room: str, message: dict) -> int:
        """
        Send a message to every connection in a room.

        Returns:
            Number of connections the message was sent to
        """
        sent_count = 0
        dead_connections = []

        for websocket in list(self._rooms.get(room, ())):
            try:
                await websocket.send_json(message)
                sent_count += 1
            except Exception as e:
                logger.warning(f"Failed to send to room {room}: {e}")
                dead_connections.append(websocket)

        for ws in dead_connections:
            self.disconnect(ws)

        return sent_count

    async def broadcast_event(self, event_type: str, data: dict, rooms: Iterable[str]) -> int:
        """
        Send a typed event to several rooms. A connection in more than one of
        the rooms receives it once.
        """
        message = {
            "type": event_type,
            "data": data,
            "timestamp": utcnow().isoformat(),
        }

        targets: Dict[WebSocket, str] = {}
        for room in rooms:
            for websocket in self._rooms.get(room, ()):
                targets.setdefault(websocket, room)

        sent_count = 0
        for websocket, room in targets.items():
            try:
                await websocket.send_json(message)
                sent_count += 1
            except Exception as e:
                logger.warning(f"Failed to send {event_type} to room {room}: {e}")
                self.disconnect(websocket)
        return sent_count

    async def check_stale_connections(self, timeout_seconds: int = 120) -> int:
        """Close and drop connections without a heartbeat for ``timeout_seconds``."""
        now = utcnow()
        async with self._lock:
            stale = [
                websocket
                for websocket, last_heartbeat in self._heartbeats.items()
                if (now - last_heartbeat).total_seconds() > timeout_seconds
            ]

        for websocket in stale:
            try:
                await websocket.close(code=4002, reason="Connection timeout")
            except Exception as e:
                logger.debug(f"Close of stale WebSocket failed: {e}")
            self.disconnect(websocket)

        if stale:
            logger.info(f"Cleaned up {len(stale)} stale WebSocket connections")
        return len(stale)

    def get_connection_stats(self) -> dict:
        return {
            "total_connections": self.total_connections,
            "rooms": {room: len(members) for room, members in self._rooms.items()},
        }


# Global manager instance
manager = ConnectionManager()
