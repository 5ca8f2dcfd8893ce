from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..crud import count_unread, delete_notification, get_notifications, mark_all_as_read, mark_as_read
from ..database import get_db
from ..schemas import (
    ConnectionStatusOut,
    MarkAllReadOut,
    NotificationListResponse,
    NotificationOut,
    UnreadCountOut,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=NotificationListResponse)
def my_notifications(
    limit: int = Query(50, ge=1, le=200),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = current_user["id"]
    return {
        "notifications": get_notifications(db, user_id, limit=limit),
        "unread_count": count_unread(db, user_id),
    }


@router.get("/unread-count", response_model=UnreadCountOut)
def unread_count(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"unread_count": count_unread(db, current_user["id"])}


@router.get("/connection", response_model=ConnectionStatusOut)
def connection_status(request: Request, current_user: Dict = Depends(get_current_user)):
    broadcaster = request.app.state.broadcaster
    user_id = current_user["id"]
    return {
        "user_id": user_id,
        "connected": broadcaster.is_user_connected(user_id),
        "clients": broadcaster.client_count(user_id),
    }


@router.patch("/mark-all-read", response_model=MarkAllReadOut)
def read_all(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"updated": mark_all_as_read(db, current_user["id"])}


@router.patch("/{notification_id}/read", response_model=NotificationOut)
def read_one(
    notification_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = mark_as_read(db, current_user["id"], notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.delete("/{notification_id}", response_model=NotificationOut)
def remove(
    notification_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = delete_notification(db, current_user["id"], notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification
