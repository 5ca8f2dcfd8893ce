from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .broadcaster import NotificationBroadcaster, make_event
from .crud import create_notification
from .database import SessionLocal
from .models import NotificationPriority
from .schemas import NotificationOut

logger = logging.getLogger(__name__)


def _seller(payload: Dict[str, Any]) -> List[str]:
    seller_id = payload.get("seller_id")
    return [str(seller_id)] if seller_id else []


def _participants(payload: Dict[str, Any]) -> List[str]:
    return [str(u) for u in payload.get("participant_ids") or []]


def _seller_and_participants(payload: Dict[str, Any]) -> List[str]:
    recipients = _seller(payload)
    for user_id in _participants(payload):
        if user_id not in recipients:
            recipients.append(user_id)
    return recipients


def _progress(payload: Dict[str, Any]) -> str:
    return f"{payload.get('current_participants')}/{payload.get('target_participants')}"


# event -> (notification type, priority, recipients, title, message)
GROUP_EVENTS: Dict[str, Tuple[str, str, Callable, str, Callable[[Dict[str, Any]], str]]] = {
    "group.joined": (
        "group_participant_joined",
        NotificationPriority.NORMAL,
        _seller,
        "New participant",
        lambda p: f'A shopper joined the group purchase for "{p.get("product_name")}" ({_progress(p)}).',
    ),
    "group.left": (
        "group_participant_left",
        NotificationPriority.LOW,
        _seller,
        "Participant left",
        lambda p: f'A shopper left the group purchase for "{p.get("product_name")}" ({_progress(p)}).',
    ),
    "group.target_reached": (
        "group_target_reached",
        NotificationPriority.HIGH,
        _seller_and_participants,
        "Group target reached!",
        lambda p: (
            f'The group purchase for "{p.get("product_name")}" reached its target of '
            f'{p.get("target_participants")} participants. Current price: {p.get("current_price")}.'
        ),
    ),
    "group.full": (
        "group_full",
        NotificationPriority.HIGH,
        _seller,
        "Group is full!",
        lambda p: (
            f'The group purchase for "{p.get("product_name")}" is now full with '
            f'{p.get("current_participants")} participants.'
        ),
    ),
    "group.ended": (
        "group_ended",
        NotificationPriority.NORMAL,
        _participants,
        "Group purchase ended",
        lambda p: (
            f'The group purchase for "{p.get("product_name")}" has ended with '
            f'{p.get("current_participants")} participants.'
        ),
    ),
}

GROUP_ROUTING_KEYS = list(GROUP_EVENTS)


def handle_group_event(
    payload: Dict[str, Any],
    broadcaster: Optional[NotificationBroadcaster] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> List[NotificationOut]:
    event = payload.get("event") or ""
    rule = GROUP_EVENTS.get(event)
    if rule is None:
        # Unknown event; ignore
        return []

    notification_type, priority, recipients_of, title, render = rule
    recipients = recipients_of(payload)
    data = {
        "event": event,
        "group_purchase_id": payload.get("group_purchase_id"),
        "product_id": payload.get("product_id"),
        "product_name": payload.get("product_name"),
        "current_participants": payload.get("current_participants"),
        "target_participants": payload.get("target_participants"),
        "current_price": payload.get("current_price"),
        "version": payload.get("version"),
    }

    created: List[NotificationOut] = []
    db = session_factory()
    try:
        for user_id in recipients:
            notification = create_notification(
                db,
                user_id=user_id,
                type=notification_type,
                title=title,
                message=render(payload),
                priority=priority,
                data=data,
            )
            out = NotificationOut.model_validate(notification)
            created.append(out)
            if broadcaster is not None:
                body = out.model_dump(mode="json")
                broadcaster.publish_threadsafe(user_id, make_event("new_notification", user_id, body))
    finally:
        db.close()

    logger.info("%s for group purchase %s notified %s users", event, payload.get("group_purchase_id"), len(created))
    return created


def make_group_event_handler(
    broadcaster: NotificationBroadcaster,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Callable[[Dict[str, Any]], None]:
    def _handle(payload: Dict[str, Any]) -> None:
        handle_group_event(payload, broadcaster=broadcaster, session_factory=session_factory)

    return _handle
