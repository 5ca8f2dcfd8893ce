from __future__ import annotations

import asyncio
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .broadcaster import NotificationBroadcaster
from .database import init_db
from .handlers import GROUP_ROUTING_KEYS, make_group_event_handler
from .messaging import start_consumer_in_thread
from .routers import notification_router, realtime_router

APP_NAME = "notification-service"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
GROUP_QUEUE = os.getenv("NOTIFICATION_GROUP_QUEUE", "notification-service.group.q")
CONSUMER_ENABLED = os.getenv("NOTIFICATION_CONSUMER_ENABLED", "true").lower() == "true"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Notification Service", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.broadcaster = NotificationBroadcaster()

init_db()

app.include_router(notification_router.router)
app.include_router(realtime_router.router)


@app.on_event("startup")
async def _startup() -> None:
    broadcaster: NotificationBroadcaster = app.state.broadcaster
    broadcaster.bind_loop(asyncio.get_running_loop())

    if CONSUMER_ENABLED:
        # listen to group purchase progress events
        start_consumer_in_thread(
            queue_name=GROUP_QUEUE,
            binding_keys=GROUP_ROUTING_KEYS,
            handler=make_group_event_handler(broadcaster),
            prefetch_count=5,
        )


@app.get("/")
def root():
    return {"service": APP_NAME, "status": "running"}


@app.get("/health")
def health():
    return {"ok": True, "connected_clients": app.state.broadcaster.total_clients()}
