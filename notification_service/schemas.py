from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class NotificationOut(BaseModel):
    id: int
    user_id: str
    type: str
    title: str
    message: str
    priority: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    notifications: List[NotificationOut]
    unread_count: int


class UnreadCountOut(BaseModel):
    unread_count: int


class MarkAllReadOut(BaseModel):
    updated: int


class ConnectionStatusOut(BaseModel):
    user_id: str
    connected: bool
    clients: int
