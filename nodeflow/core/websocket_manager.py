"""WebSocket Manager streaming run events to editor clients."""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import RunEvent
from .logging import get_logger


logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _describe(item) -> str:
    if isinstance(item, RunEvent):
        return f"{item.event_type} event for run {item.run_id}"
    return f"{item.payload.get('event_type')} message for connection {item.connection_id}"


class WebSocketConnection:
    """Represents a WebSocket connection with metadata."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.now(timezone.utc)
        self.subscribed_runs: Set[str] = set()
        self.is_active = True


class DirectMessage:
    """A payload queued for one connection rather than for every subscriber of a run."""

    def __init__(self, connection_id: str, payload: Dict[str, Any]):
        self.connection_id = connection_id
        self.payload = payload


class WebSocketManager:
    """
    Fans RunEvents out to the WebSocket connections subscribed to each run.

    ``publish`` is registered as a run listener. It runs synchronously inside
    the scheduler, so it only enqueues; a broadcast task drains the queue and
    does the socket writes.
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        snapshot_provider: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None
    ):
        self.snapshot_provider = snapshot_provider
        self._connections: Dict[str, WebSocketConnection] = {}
        self._run_subscribers: Dict[str, Set[str]] = {}
        self._broadcast_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._dropped_events = 0

        logger.info("WebSocketManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        Returns:
            Connection ID for the new connection
        """
        await websocket.accept()

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)
        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": _now_iso(),
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        connection.is_active = False
        for run_id in list(connection.subscribed_runs):
            self._remove_subscriber(connection_id, run_id)
        logger.info(f"WebSocket connection closed: {connection_id}")

    async def subscribe_to_run(self, connection_id: str, run_id: str) -> bool:
        """
        Subscribe a connection to the events of one run.

        Events published before the subscription are not replayed one by one.
        When the snapshot provider knows the run, a ``run_snapshot`` message
        with its current state is queued ahead of every later event.

        Returns:
            True if subscription was successful, False otherwise
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "run_id": run_id,
            "timestamp": _now_iso(),
        })

        # No await between the snapshot and registering the subscriber.
        snapshot = self.snapshot_provider(run_id) if self.snapshot_provider is not None else None
        connection.subscribed_runs.add(run_id)
        self._run_subscribers.setdefault(run_id, set()).add(connection_id)
        logger.info(f"Connection {connection_id} subscribed to run {run_id}")

        if snapshot is not None:
            self._enqueue(DirectMessage(connection_id, {
                "event_type": "run_snapshot",
                "run_id": run_id,
                "timestamp": _now_iso(),
                "data": snapshot,
            }))
        return True

    async def unsubscribe_from_run(self, connection_id: str, run_id: str) -> bool:
        if connection_id not in self._connections:
            return False
        self._remove_subscriber(connection_id, run_id)
        logger.info(f"Connection {connection_id} unsubscribed from run {run_id}")
        return True

    def _remove_subscriber(self, connection_id: str, run_id: str):
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.subscribed_runs.discard(run_id)
        subscribers = self._run_subscribers.get(run_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._run_subscribers[run_id]

    def publish(self, event: RunEvent) -> None:
        """Queue an event for broadcasting; never blocks the caller."""
        if event.run_id not in self._run_subscribers:
            return
        self._enqueue(event)

    def _enqueue(self, item):
        try:
            self._broadcast_queue.put_nowait(item)
        except asyncio.QueueFull:
            self._dropped_events += 1
            logger.warning(f"Broadcast queue full, dropped {_describe(item)}")

    async def broadcast_event(self, event: RunEvent) -> None:
        """Send an event to every subscriber of its run."""
        subscribers = self._run_subscribers.get(event.run_id)
        if not subscribers:
            return

        payload = event.model_dump(mode="json")
        disconnected = []
        for connection_id in list(subscribers):
            if not await self._send_to_connection(connection_id, payload):
                disconnected.append(connection_id)

        for connection_id in disconnected:
            await self.disconnect(connection_id)

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
        except RuntimeError as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
        connection.is_active = False
        return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_run_subscriber_count(self, run_id: str) -> int:
        return len(self._run_subscribers.get(run_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        """Describe active connections and subscriptions for the health endpoint."""
        return {
            "total_connections": self.get_connection_count(),
            "connections": [
                {
                    "connection_id": conn_id,
                    "connected_at": conn.connected_at.isoformat(),
                    "subscribed_runs": sorted(conn.subscribed_runs),
                }
                for conn_id, conn in self._connections.items() if conn.is_active
            ],
            "run_subscribers": {run_id: len(subs) for run_id, subs in self._run_subscribers.items()},
            "queued_events": self._broadcast_queue.qsize(),
            "dropped_events": self._dropped_events,
        }

    def start_broadcast_processor(self):
        """Start the task draining the broadcast queue."""
        if self._queue_processor_task is None or self._queue_processor_task.done():
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    async def stop_broadcast_processor(self):
        task, self._queue_processor_task = self._queue_processor_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self):
        while True:
            item = await self._broadcast_queue.get()
            try:
                if isinstance(item, DirectMessage):
                    await self._send_to_connection(item.connection_id, item.payload)
                else:
                    await self.broadcast_event(item)
            except Exception as e:
                logger.error(f"Error broadcasting {_describe(item)}: {str(e)}", exc_info=True)
            finally:
                self._broadcast_queue.task_done()
