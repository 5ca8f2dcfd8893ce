"""Progress and pricing rules for group purchases.

Everything here is a pure function of a product, its discount tiers and a group
purchase. Arguments are duck-typed: SQLAlchemy rows, pydantic models or simple
namespaces with the same attribute names all work.

Two prices exist for a group:

- the *display* price (``current_discount_price``) is the seller's committed
  first-tier price, shown to shoppers before any threshold is met;
- the *tracked* price (``tracked_price``) is what the participant count has
  actually unlocked so far and is what crud stores in ``current_price``.
"""
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from .models import GroupPurchaseStatus


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def sorted_tiers(tiers: Optional[Iterable[Any]]) -> List[Any]:
    return sorted(tiers or [], key=lambda t: t.participant_count)


def current_discount_price(product: Any, group_purchase: Any) -> Decimal:
    """Price shown to shoppers.

    The first (lowest threshold) tier is surfaced immediately, even with zero
    participants. Without tiers the group's tracked price is shown.
    """
    tiers = sorted_tiers(getattr(product, "discount_tiers", None))
    if tiers:
        return _money(tiers[0].final_price)
    return _money(group_purchase.current_price)


def applicable_tier(tiers: Optional[Iterable[Any]], participants: int) -> Optional[Any]:
    """Highest tier whose threshold is at or below ``participants``."""
    best = None
    for tier in sorted_tiers(tiers):
        if tier.participant_count <= participants:
            best = tier
        else:
            break
    return best


def next_tier(tiers: Optional[Iterable[Any]], participants: int) -> Optional[Any]:
    for tier in sorted_tiers(tiers):
        if tier.participant_count > participants:
            return tier
    return None


def participants_to_next_tier(tiers: Optional[Iterable[Any]], participants: int) -> int:
    upcoming = next_tier(tiers, participants)
    if upcoming is None:
        return 0
    return upcoming.participant_count - participants


def tracked_price(product: Any, tiers: Optional[Iterable[Any]], participants: int) -> Decimal:
    tier = applicable_tier(tiers, participants)
    if tier is not None:
        return _money(tier.final_price)
    return _money(product.original_price)


def is_complete(group_purchase: Any) -> bool:
    return (group_purchase.current_participants or 0) >= group_purchase.target_participants


def remaining_participants(group_purchase: Any) -> int:
    return max(0, group_purchase.target_participants - (group_purchase.current_participants or 0))


def progress_percent(group_purchase: Any) -> float:
    current = group_purchase.current_participants or 0
    return min(current / group_purchase.target_participants * 100, 100.0)


def savings(product: Any, group_purchase: Any) -> Decimal:
    saved = _money(product.original_price) - current_discount_price(product, group_purchase)
    return max(saved, Decimal("0.00"))


def derive_status(group_purchase: Any, now: Optional[dt.datetime] = None) -> str:
    if group_purchase.status == GroupPurchaseStatus.ENDED:
        return GroupPurchaseStatus.ENDED
    now = now or dt.datetime.now(dt.timezone.utc)
    if _as_utc(now) >= _as_utc(group_purchase.end_time):
        return GroupPurchaseStatus.ENDED
    return GroupPurchaseStatus.ACTIVE


def summarize(product: Any, group_purchase: Any, now: Optional[dt.datetime] = None) -> dict:
    tiers = sorted_tiers(getattr(product, "discount_tiers", None))
    participants = group_purchase.current_participants or 0
    return {
        "status": derive_status(group_purchase, now),
        "display_price": current_discount_price(product, group_purchase),
        "current_price": _money(group_purchase.current_price),
        "original_price": _money(product.original_price),
        "savings": savings(product, group_purchase),
        "is_complete": is_complete(group_purchase),
        "remaining_participants": remaining_participants(group_purchase),
        "progress_percent": round(progress_percent(group_purchase), 2),
        "participants_to_next_tier": participants_to_next_tier(tiers, participants),
    }


def seconds_until_end(group_purchase: Any, now: Optional[dt.datetime] = None) -> float:
    now = now or dt.datetime.now(dt.timezone.utc)
    return max(0.0, (_as_utc(group_purchase.end_time) - _as_utc(now)).total_seconds())
