"""Client side of the realtime notification channel.

``RealtimeChannel`` keeps one transport open per signed-in user and recovers
from abnormal disconnects with a single delayed retry. The retry is owned by
one ``asyncio.TimerHandle`` that is always cancelled before a new one is armed
and on teardown, so at most one reconnection is ever pending.

States::

    IDLE -> CONNECTING -> CONNECTED -> DISCONNECTED -> CONNECTING -> ...
    any  -> CLOSED (teardown, terminal)
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError

from .cache import NOTIFICATIONS_KEY, QueryCache
from .events import EventType, NotificationEvent, RealtimeNotification, parse_event

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


class ChannelState:
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class TransportClosed(Exception):
    def __init__(self, code: int = ABNORMAL_CLOSURE, reason: str = ""):
        super().__init__(f"connection closed ({code}) {reason}".strip())
        self.code = code
        self.reason = reason


class WebSocketTransport:
    """Adapter over a ``websockets`` client connection."""

    def __init__(self, connection):
        self._connection = connection

    @classmethod
    async def open(cls, url: str) -> "WebSocketTransport":
        return cls(await websockets.connect(url))

    async def recv(self) -> str:
        try:
            return await self._connection.recv()
        except websockets.ConnectionClosed as e:
            if e.rcvd is not None:
                raise TransportClosed(e.rcvd.code, e.rcvd.reason)
            raise TransportClosed(ABNORMAL_CLOSURE, "Connection lost")

    async def send(self, text: str) -> None:
        try:
            await self._connection.send(text)
        except websockets.ConnectionClosed as e:
            raise TransportClosed(ABNORMAL_CLOSURE, str(e))

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        await self._connection.close(code=code, reason=reason)


TransportFactory = Callable[[str], Awaitable[object]]
NotificationCallback = Callable[[RealtimeNotification], None]


def notifications_url(base_url: str, token: str) -> str:
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws/notifications?{urlencode({'token': token})}"


class RealtimeChannel:
    def __init__(
        self,
        base_url: str,
        *,
        transport_factory: Optional[TransportFactory] = None,
        on_notification: Optional[NotificationCallback] = None,
        query_cache: Optional[QueryCache] = None,
        connect_timeout: float = 10.0,
        reconnect_delay: float = 3.0,
    ):
        self.base_url = base_url
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.on_notification = on_notification
        self.query_cache = query_cache
        self._transport_factory = transport_factory or WebSocketTransport.open

        self.state = ChannelState.IDLE
        self.error: Optional[str] = None
        self.last_seen: Optional[float] = None
        self.reconnects_scheduled = 0

        self._user_id: Optional[str] = None
        self._token: Optional[str] = None
        self._transport = None
        self._reader: Optional[asyncio.Task] = None
        self._retry: Optional[asyncio.TimerHandle] = None
        self._pending_connect: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ChannelState.CONNECTED

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None

    async def connect(self, user_id: Optional[str], token: Optional[str]) -> bool:
        if self.state == ChannelState.CLOSED:
            logger.debug("Channel is closed; ignoring connect")
            return False
        if not user_id or not token:
            logger.info("Not authenticated; skipping notification channel")
            return False

        self._cancel_retry()
        if self._transport is not None:
            if self.state == ChannelState.CONNECTED and user_id == self._user_id:
                return True
            await self._drop_transport(NORMAL_CLOSURE, "Switching user")

        self._user_id, self._token = str(user_id), token
        self.state = ChannelState.CONNECTING
        url = notifications_url(self.base_url, token)
        logger.info("Connecting notification channel for user %s", self._user_id)

        try:
            transport = await asyncio.wait_for(self._transport_factory(url), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._on_disconnect(ABNORMAL_CLOSURE, "Connection timed out")
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._on_disconnect(ABNORMAL_CLOSURE, f"Failed to connect: {e}")
            return False

        if self.state != ChannelState.CONNECTING:
            # Torn down while the handshake was in flight
            await self._close_quietly(transport, NORMAL_CLOSURE, "Client teardown")
            return False

        self._transport = transport
        self.state = ChannelState.CONNECTED
        self.error = None
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(transport))
        logger.info("Notification channel connected for user %s", self._user_id)
        return True

    async def reconnect(self) -> bool:
        """Drop the current connection without triggering the automatic retry and connect again."""
        if self.state == ChannelState.CLOSED:
            return False
        logger.info("Manual reconnection triggered")
        self._cancel_retry()
        await self._drop_transport(NORMAL_CLOSURE, "Manual reconnect")
        self.state = ChannelState.DISCONNECTED
        self.error = None
        return await self.connect(self._user_id, self._token)

    async def close(self) -> None:
        if self.state == ChannelState.CLOSED:
            return
        self.state = ChannelState.CLOSED
        self._cancel_retry()
        pending, self._pending_connect = self._pending_connect, None
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            pending.cancel()
        await self._drop_transport(NORMAL_CLOSURE, "Client teardown")
        logger.info("Notification channel closed")

    async def ping(self) -> bool:
        if self.state != ChannelState.CONNECTED or self._transport is None:
            return False
        try:
            await self._transport.send(json.dumps({"type": "ping"}))
            return True
        except Exception as e:
            logger.warning("Ping failed: %s", e)
            return False

    # -----------------------------
    # Internals
    # -----------------------------

    async def _read_loop(self, transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                self.handle_frame(raw)
        except TransportClosed as e:
            code, reason = e.code, e.reason
        except asyncio.CancelledError:
            raise
        except Exception as e:
            code, reason = ABNORMAL_CLOSURE, str(e) or "Connection error occurred"

        if transport is self._transport:
            self._transport = None
            self._reader = None
            self._on_disconnect(code, reason)

    def handle_frame(self, raw) -> Optional[NotificationEvent]:
        try:
            event = parse_event(raw)
        except ValueError as e:
            logger.warning("Dropping malformed notification frame: %s", e)
            return None

        self.last_seen = time.monotonic()
        if event.type == EventType.NEW_NOTIFICATION:
            self._deliver(event)
        elif event.type == EventType.CONNECTED:
            logger.info("Notification channel confirmed by server")
        elif event.type in (EventType.HEARTBEAT, EventType.PONG):
            pass
        else:
            logger.debug("Ignoring unknown event type %s", event.type)
        return event

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            notification = RealtimeNotification.model_validate(event.data)
        except ValidationError as e:
            logger.warning("Dropping notification with unexpected payload: %s", e)
            return

        if self.query_cache is not None:
            self.query_cache.invalidate_prefix([NOTIFICATIONS_KEY])

        if self.on_notification is not None:
            try:
                self.on_notification(notification)
            except Exception:
                logger.exception("Notification callback failed")

    def _on_disconnect(self, code: int, reason: str) -> None:
        if self.state == ChannelState.CLOSED:
            return
        self.state = ChannelState.DISCONNECTED
        logger.info("Notification channel closed: code=%s reason=%s", code, reason)
        if code == NORMAL_CLOSURE:
            self.error = None
            return
        self.error = reason or "Connection error occurred"
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_retry()
        loop = asyncio.get_running_loop()
        self._retry = loop.call_later(self.reconnect_delay, self._fire_retry)
        self.reconnects_scheduled += 1
        logger.info("Reconnecting in %ss", self.reconnect_delay)

    def _fire_retry(self) -> None:
        self._retry = None
        if self.state != ChannelState.DISCONNECTED:
            return
        logger.info("Attempting to reconnect")
        self._pending_connect = asyncio.ensure_future(self.connect(self._user_id, self._token))

    def _cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    async def _drop_transport(self, code: int, reason: str) -> None:
        reader, self._reader = self._reader, None
        transport, self._transport = self._transport, None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await self._close_quietly(transport, code, reason)

    async def _close_quietly(self, transport, code: int, reason: str) -> None:
        try:
            await transport.close(code, reason)
        except Exception as e:
            logger.debug("Error while closing transport: %s", e)
