from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .models import Notification, NotificationPriority


def create_notification(
    db: Session,
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    priority: str = NotificationPriority.NORMAL,
    data: Optional[Dict[str, Any]] = None,
) -> Notification:
    notification = Notification(
        user_id=str(user_id),
        type=type,
        title=title,
        message=message,
        priority=priority,
        data=data or {},
        is_read=False,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def get_notifications(db: Session, user_id: str, limit: int = 50) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )


def get_notification(db: Session, user_id: str, notification_id: int) -> Optional[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )


def count_unread(db: Session, user_id: str) -> int:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .count()
    )


def mark_as_read(db: Session, user_id: str, notification_id: int) -> Optional[Notification]:
    notification = get_notification(db, user_id, notification_id)
    if notification is None:
        return None
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def mark_all_as_read(db: Session, user_id: str) -> int:
    updated = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated


def delete_notification(db: Session, user_id: str, notification_id: int) -> Optional[Notification]:
    notification = get_notification(db, user_id, notification_id)
    if notification:
        db.delete(notification)
        db.commit()
    return notification
