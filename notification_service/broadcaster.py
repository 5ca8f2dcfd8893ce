"""Fan-out of notification events to every live connection of a user.

A user may hold several connections at once (one per browser tab), over
WebSocket or Server-Sent-Events. Both kinds expose the same ``send(text)``
coroutine so the broadcaster never needs to know which one it is talking to.
All methods except ``publish_threadsafe`` must run on the event loop.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from concurrent.futures import Future
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def make_event(event_type: str, user_id: str, data: Any = None, **extra: Any) -> Dict[str, Any]:
    event = {"type": event_type, "data": data, "userId": user_id, "timestamp": int(time.time() * 1000)}
    event.update(extra)
    return event


class WebSocketClient:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, text: str) -> None:
        await self.websocket.send_text(text)


class StreamClient:
    """SSE connection; frames are queued and drained by the streaming response."""

    def __init__(self, max_pending: int = 100):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("stream closed")
        try:
            self.queue.put_nowait(text)
        except asyncio.QueueFull:
            # A reader that stopped draining is treated as dead; its stream ends
            self.closed = True
            raise


class NotificationBroadcaster:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._clients: Dict[str, List[Any]] = {}
        self._loop = loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def add_client(self, user_id: str, client: Any) -> None:
        self._clients.setdefault(user_id, []).append(client)
        logger.info("User %s connected. Total clients: %s", user_id, self.total_clients())

    def remove_client(self, user_id: str, client: Any) -> None:
        clients = self._clients.get(user_id)
        if not clients:
            return
        if client in clients:
            clients.remove(client)
        if not clients:
            del self._clients[user_id]
        logger.info("User %s disconnected. Total clients: %s", user_id, self.total_clients())

    async def send_to_client(self, user_id: str, client: Any, event: Dict[str, Any]) -> bool:
        try:
            await client.send(json.dumps(event, default=str))
            return True
        except Exception as e:
            logger.warning("Dropping dead connection of user %s: %r", user_id, e)
            self.remove_client(user_id, client)
            return False

    async def broadcast_to_user(self, user_id: str, event: Dict[str, Any]) -> int:
        delivered = 0
        for client in list(self._clients.get(user_id, [])):
            if await self.send_to_client(user_id, client, event):
                delivered += 1
        return delivered

    async def broadcast_to_all(self, event: Dict[str, Any]) -> int:
        delivered = 0
        for user_id in list(self._clients):
            delivered += await self.broadcast_to_user(user_id, dict(event, userId=user_id))
        return delivered

    def publish_threadsafe(self, user_id: str, event: Dict[str, Any]) -> Optional[Future]:
        """Schedule a broadcast from a thread that does not own the event loop."""
        if self._loop is None or self._loop.is_closed():
            logger.debug("No event loop bound; event for user %s not pushed", user_id)
            return None
        return asyncio.run_coroutine_threadsafe(self.broadcast_to_user(user_id, event), self._loop)

    def client_count(self, user_id: str) -> int:
        return len(self._clients.get(user_id, []))

    def total_clients(self) -> int:
        return sum(len(c) for c in self._clients.values())

    def is_user_connected(self, user_id: str) -> bool:
        return self.client_count(user_id) > 0

    def connected_users(self) -> List[str]:
        return list(self._clients)
