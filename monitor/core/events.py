"""Outbound event channel (UI / telemetry)."""
import asyncio
import logging

from fastapi import WebSocket

USAGE_UPDATE = "usage-update"
SCHEDULER_STATUS = "scheduler-status"
SESSION_STATUS = "session-status"
SYSTEM_WAKE = "system-wake"
USAGE_RESET = "usage-reset"
NOTIFICATION = "notification"

logger = logging.getLogger(__name__)


class EventSink:
    """Fire-and-forget event publisher. publish() must never block or raise."""

    def publish(self, event: str, payload: dict = None):
        pass


class EventFeed(EventSink):
    """Broadcasts events to connected WebSocket clients."""

    def __init__(self):
        self.clients: list[WebSocket] = []
        self._tasks: set[asyncio.Task] = set()

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.clients.append(ws)

    def disconnect(self, ws: WebSocket):
        if ws in self.clients:
            self.clients.remove(ws)

    async def broadcast(self, data: dict):
        dead = []
        for ws in list(self.clients):
            try:
                await ws.send_json(data)
            except Exception as e:
                logger.debug("Dropping websocket client: %s", e)
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    def publish(self, event: str, payload: dict = None):
        if not self.clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping %s event", event)
            return
        task = loop.create_task(self.broadcast({"type": event, **(payload or {})}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
