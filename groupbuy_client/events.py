from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType:
    CONNECTED = "connected"
    NEW_NOTIFICATION = "new_notification"
    HEARTBEAT = "heartbeat"
    PONG = "pong"


class NotificationEvent(BaseModel):
    """One frame pushed over the notification channel."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(..., min_length=1)
    data: Any = None
    user_id: Optional[str] = Field(None, alias="userId")


class RealtimeNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    type: str
    title: str
    message: str
    priority: str = "normal"
    is_read: bool = False
    created_at: Optional[str] = None
    data: Optional[dict] = None


def parse_event(raw: Any) -> NotificationEvent:
    """Raises ``pydantic.ValidationError`` (a ``ValueError``) on bad frames."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    return NotificationEvent.model_validate_json(raw)
