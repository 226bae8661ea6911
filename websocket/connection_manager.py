"""
WebSocket connection manager for live engine events.

Connected clients receive tracking profile changes, driving state changes
and driving events as JSON messages. The manager subscribes to the
engine's event streams; since those deliver synchronously, every broadcast
is scheduled as a task on the running loop.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Set

from fastapi import WebSocket

from driving.session import DrivingEvent, DrivingStateChange
from policy.profiles import TrackingProfile
from signals.ports import Subscription

if TYPE_CHECKING:
    from engine.orchestrator import TrackingEngine


logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ConnectionManager:
    """
    Manager for WebSocket clients subscribed to engine events.

    Attributes:
        active_connections: Set of currently connected WebSocket clients
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)
        self._subscriptions: List[Subscription] = []
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept a connection and send the connection confirmation."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)

        self._logger.info(
            f"WebSocket client connected. Total connections: {len(self.active_connections)}",
            extra={"extra_data": {
                "total_connections": len(self.active_connections),
                "client_host": websocket.client.host if websocket.client else "unknown"
            }}
        )

        await self._send_to_client(websocket, {
            "type": "connection",
            "status": "connected",
            "message": "Connected to tracking engine events",
            "timestamp": _utc_now()
        })

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.active_connections.discard(websocket)

        self._logger.info(
            f"WebSocket client disconnected. Total connections: {len(self.active_connections)}",
            extra={"extra_data": {"total_connections": len(self.active_connections)}}
        )

    async def _send_to_client(self, websocket: WebSocket, data: dict) -> bool:
        try:
            await websocket.send_json(data)
            return True
        except Exception as e:
            self._logger.warning(
                f"Failed to send to WebSocket client: {e}",
                extra={"extra_data": {"error": str(e)}}
            )
            return False

    async def broadcast(self, message: dict) -> int:
        """
        Send a message to every connected client; clients that fail are dropped.

        Returns:
            Number of clients that received the message
        """
        if not self.active_connections:
            return 0

        if "timestamp" not in message:
            message["timestamp"] = _utc_now()

        async with self._lock:
            connections = list(self.active_connections)

        results = await asyncio.gather(
            *(self._send_to_client(websocket, message) for websocket in connections),
            return_exceptions=True
        )

        successful_sends = 0
        disconnected_clients: List[WebSocket] = []
        for websocket, result in zip(connections, results):
            if result is True:
                successful_sends += 1
            else:
                disconnected_clients.append(websocket)

        if disconnected_clients:
            async with self._lock:
                for websocket in disconnected_clients:
                    self.active_connections.discard(websocket)
            self._logger.info(
                f"Removed {len(disconnected_clients)} disconnected clients",
                extra={"extra_data": {
                    "removed_count": len(disconnected_clients),
                    "remaining_connections": len(self.active_connections)
                }}
            )

        self._logger.debug(
            f"Broadcast complete: {successful_sends}/{len(connections)} clients received message",
            extra={"extra_data": {"type": message.get("type"), "successful_sends": successful_sends}}
        )
        return successful_sends

    async def broadcast_profile_change(self, profile: TrackingProfile) -> int:
        return await self.broadcast({"type": "profile_change", "data": profile.to_dict()})

    async def broadcast_driving_event(self, event: DrivingEvent) -> int:
        return await self.broadcast({"type": "driving_event", "data": event.to_dict()})

    async def broadcast_driving_state(self, change: DrivingStateChange) -> int:
        return await self.broadcast({
            "type": "driving_state",
            "data": {
                "is_active": change.is_active,
                "session": change.session.to_dict(include_route=False),
            }
        })

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    async def send_heartbeat(self) -> int:
        return await self.broadcast({"type": "heartbeat", "timestamp": _utc_now()})

    # Engine wiring

    def attach(self, engine: "TrackingEngine") -> None:
        """Forward the engine's profile and driving streams to clients."""
        self.detach()
        self._subscriptions = [
            engine.on_profile_change.subscribe(
                lambda profile: self._schedule(self.broadcast_profile_change(profile))
            ),
            engine.on_driving_event.subscribe(
                lambda event: self._schedule(self.broadcast_driving_event(event))
            ),
            engine.on_driving_state_changed.subscribe(
                lambda change: self._schedule(self.broadcast_driving_state(change))
            ),
        ]

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    def _schedule(self, coro) -> Optional[asyncio.Task]:
        if not self.active_connections:
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def close(self) -> None:
        """Detach from the engine and wait for in-flight broadcasts."""
        self.detach()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
