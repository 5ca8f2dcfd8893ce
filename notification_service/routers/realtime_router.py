"""Push endpoints: a WebSocket at /ws/notifications and an SSE stream."""
import asyncio
import json
import logging
import os
from typing import Dict

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse

from ..auth import get_current_user, user_id_from_token
from ..broadcaster import NotificationBroadcaster, StreamClient, WebSocketClient, make_event

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))

router = APIRouter(tags=["Realtime"])


async def _heartbeat(broadcaster: NotificationBroadcaster, user_id: str, client: WebSocketClient, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if not await broadcaster.send_to_client(user_id, client, make_event("heartbeat", user_id)):
            return


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str = Query(None)):
    user_id = user_id_from_token(token)
    if user_id is None:
        logger.info("Rejecting WebSocket without a valid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Valid token required")
        return

    await websocket.accept()
    broadcaster: NotificationBroadcaster = websocket.app.state.broadcaster
    client = WebSocketClient(websocket)
    broadcaster.add_client(user_id, client)
    heartbeat = asyncio.create_task(_heartbeat(broadcaster, user_id, client, HEARTBEAT_INTERVAL_SECONDS))

    try:
        await client.send(json.dumps(make_event("connected", user_id, message="WebSocket connection established")))
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring malformed frame from user %s", user_id)
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await client.send(json.dumps(make_event("pong", user_id)))
    except WebSocketDisconnect as e:
        logger.info("WebSocket of user %s closed with code %s", user_id, e.code)
    finally:
        heartbeat.cancel()
        broadcaster.remove_client(user_id, client)


async def stream_frames(
    request: Request,
    broadcaster: NotificationBroadcaster,
    user_id: str,
    client: StreamClient,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
):
    """SSE frames for one connection. Ends when the browser leaves or the client overflows."""
    try:
        connected = make_event("connected", user_id, message="Connected to notifications")
        yield f"data: {json.dumps(connected)}\n\n"
        while not client.closed and not await request.is_disconnected():
            try:
                text = await asyncio.wait_for(client.queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                text = json.dumps(make_event("heartbeat", user_id))
            yield f"data: {text}\n\n"
        if client.closed:
            logger.info("Ending SSE stream of user %s; it fell behind", user_id)
    finally:
        broadcaster.remove_client(user_id, client)


@router.get("/notifications/stream")
async def notifications_stream(request: Request, current_user: Dict = Depends(get_current_user)):
    user_id = current_user["id"]
    broadcaster: NotificationBroadcaster = request.app.state.broadcaster
    client = StreamClient()
    broadcaster.add_client(user_id, client)

    return StreamingResponse(
        stream_frames(request, broadcaster, user_id, client),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
