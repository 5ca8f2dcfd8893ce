import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import pricing
from .errors import (
    AlreadyParticipating,
    GroupClosed,
    GroupFull,
    GroupPurchaseNotFound,
    InvalidDiscountTiers,
    NotParticipating,
    ProductNotFound,
    ProfileIncomplete,
)
from .models import (
    DiscountTier,
    GroupPurchase,
    GroupPurchaseStatus,
    Participation,
    ParticipationStatus,
    Product,
    UserAddress,
)

logger = logging.getLogger(__name__)


@dataclass
class JoinResult:
    participation: Participation
    group_purchase: GroupPurchase
    reached_target: bool
    became_full: bool


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# -----------------------------
# Products & discount tiers
# -----------------------------


def _build_tiers(original_price: Decimal, tiers_data: List[dict]) -> List[DiscountTier]:
    original = Decimal(str(original_price))
    thresholds = [int(t["participant_count"]) for t in tiers_data]
    if len(set(thresholds)) != len(thresholds):
        raise InvalidDiscountTiers()

    tiers = []
    for data in sorted(tiers_data, key=lambda t: int(t["participant_count"])):
        final_price = Decimal(str(data["final_price"]))
        if final_price > original:
            raise InvalidDiscountTiers()
        percentage = data.get("discount_percentage")
        if percentage is None:
            percentage = ((original - final_price) / original * 100).quantize(Decimal("0.01"))
        tiers.append(
            DiscountTier(
                participant_count=int(data["participant_count"]),
                discount_percentage=percentage,
                final_price=final_price,
            )
        )
    return tiers


def create_product(db: Session, seller_id: str, product_data: dict) -> Product:
    tiers_data = product_data.pop("discount_tiers", None) or []
    if product_data.get("maximum_participants", 1000) < product_data.get("minimum_participants", 10):
        raise ValueError("maximum_below_minimum")

    db_product = Product(seller_id=seller_id, **product_data)
    db_product.discount_tiers = _build_tiers(db_product.original_price, tiers_data)
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_discount_tiers(db: Session, product_id: int) -> List[DiscountTier]:
    return (
        db.query(DiscountTier)
        .filter(DiscountTier.product_id == product_id)
        .order_by(DiscountTier.participant_count)
        .all()
    )


def replace_discount_tiers(db: Session, product_id: int, tiers_data: List[dict]) -> Product:
    product = get_product(db, product_id)
    if not product:
        raise ProductNotFound()

    new_tiers = _build_tiers(product.original_price, tiers_data)
    # Old rows must be gone before the new thresholds hit the unique constraint
    product.discount_tiers.clear()
    db.flush()
    product.discount_tiers = new_tiers
    db.flush()

    # Keep the tracked price of running groups in line with the new tiers
    for gp in product.group_purchases:
        if gp.status == GroupPurchaseStatus.ACTIVE:
            gp.current_price = pricing.tracked_price(product, product.discount_tiers, gp.current_participants)
            gp.version = gp.version + 1

    db.commit()
    db.refresh(product)
    return product


# -----------------------------
# Group purchases
# -----------------------------


def create_group_purchase(
    db: Session,
    product_id: int,
    end_time: dt.datetime,
    target_participants: Optional[int] = None,
) -> GroupPurchase:
    product = get_product(db, product_id)
    if not product:
        raise ProductNotFound()

    gp = GroupPurchase(
        product_id=product.id,
        target_participants=target_participants or product.minimum_participants,
        current_participants=0,
        current_price=pricing.tracked_price(product, product.discount_tiers, 0),
        status=GroupPurchaseStatus.ACTIVE,
        end_time=end_time,
        version=1,
    )
    db.add(gp)
    db.commit()
    db.refresh(gp)
    return gp


def get_group_purchase(db: Session, group_purchase_id: int) -> Optional[GroupPurchase]:
    return db.query(GroupPurchase).filter(GroupPurchase.id == group_purchase_id).first()


def _open_group_purchases(db: Session) -> List[GroupPurchase]:
    now = _now()
    groups = (
        db.query(GroupPurchase)
        .filter(GroupPurchase.status == GroupPurchaseStatus.ACTIVE)
        .order_by(GroupPurchase.end_time.asc(), GroupPurchase.id.asc())
        .all()
    )
    # end_time is compared in Python; SQLite stores it without an offset
    return [g for g in groups if pricing.derive_status(g, now) == GroupPurchaseStatus.ACTIVE]


def get_active_group_purchases(db: Session, skip: int = 0, limit: int = 100) -> List[GroupPurchase]:
    return _open_group_purchases(db)[skip: skip + limit]


def count_active_group_purchases(db: Session) -> int:
    return len(_open_group_purchases(db))


def get_participation(db: Session, group_purchase_id: int, user_id: str) -> Optional[Participation]:
    return (
        db.query(Participation)
        .filter(
            Participation.group_purchase_id == group_purchase_id,
            Participation.user_id == user_id,
        )
        .first()
    )


def get_active_participant_ids(db: Session, group_purchase_id: int) -> List[str]:
    rows = (
        db.query(Participation.user_id)
        .filter(
            Participation.group_purchase_id == group_purchase_id,
            Participation.status == ParticipationStatus.JOINED,
        )
        .all()
    )
    return [r[0] for r in rows]


def get_user_participating_group_ids(db: Session, user_id: str) -> List[int]:
    rows = (
        db.query(Participation.group_purchase_id)
        .filter(
            Participation.user_id == user_id,
            Participation.status == ParticipationStatus.JOINED,
        )
        .all()
    )
    return [r[0] for r in rows]


def count_active_participations(db: Session, group_purchase_id: int) -> int:
    return int(
        db.query(func.count(Participation.id))
        .filter(
            Participation.group_purchase_id == group_purchase_id,
            Participation.status == ParticipationStatus.JOINED,
        )
        .scalar()
        or 0
    )


def _require_open(gp: Optional[GroupPurchase], now: dt.datetime) -> GroupPurchase:
    if gp is None:
        raise GroupPurchaseNotFound()
    if pricing.derive_status(gp, now) == GroupPurchaseStatus.ENDED:
        raise GroupClosed()
    return gp


def _refresh_tracked_price(db: Session, gp: GroupPurchase) -> None:
    db.refresh(gp)
    product = gp.product
    gp.current_price = pricing.tracked_price(product, product.discount_tiers, gp.current_participants)


def join_group_purchase(db: Session, group_purchase_id: int, user_id: str, quantity: int = 1) -> JoinResult:
    """Add ``user_id`` to the group with a single conditional increment.

    The capacity check and the increment are one UPDATE statement, so two
    concurrent joiners can never both pass ``current < maximum`` on a stale read.
    """
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    now = _now()
    gp = _require_open(get_group_purchase(db, group_purchase_id), now)

    existing = get_participation(db, group_purchase_id, user_id)
    if existing is not None and existing.status == ParticipationStatus.JOINED:
        raise AlreadyParticipating()

    if not user_has_address(db, user_id):
        raise ProfileIncomplete()

    maximum = gp.product.maximum_participants
    target = gp.target_participants

    try:
        result = db.execute(
            update(GroupPurchase)
            .where(
                GroupPurchase.id == group_purchase_id,
                GroupPurchase.status == GroupPurchaseStatus.ACTIVE,
                GroupPurchase.current_participants < maximum,
            )
            .values(
                current_participants=GroupPurchase.current_participants + 1,
                version=GroupPurchase.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.rollback()
            db.refresh(gp)
            if gp.status == GroupPurchaseStatus.ENDED:
                raise GroupClosed()
            raise GroupFull()

        if existing is not None:
            flipped = db.execute(
                update(Participation)
                .where(
                    Participation.id == existing.id,
                    Participation.status == ParticipationStatus.LEFT,
                )
                .values(
                    status=ParticipationStatus.JOINED,
                    quantity=quantity,
                    joined_at=now,
                    left_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 0:
                raise AlreadyParticipating()
            participation = existing
        else:
            participation = Participation(
                group_purchase_id=group_purchase_id,
                user_id=user_id,
                quantity=quantity,
                status=ParticipationStatus.JOINED,
                joined_at=now,
            )
            db.add(participation)
            db.flush()

        _refresh_tracked_price(db, gp)
        # The count this join produced; later joiners may commit before we re-read
        count = gp.current_participants
        db.commit()
    except IntegrityError:
        # Same user joining twice at once: the unique constraint rejects the loser
        db.rollback()
        raise AlreadyParticipating()
    except AlreadyParticipating:
        db.rollback()
        raise

    db.refresh(gp)
    db.refresh(participation)
    logger.info("User %s joined group purchase %s (%s/%s)", user_id, gp.id, count, target)
    return JoinResult(
        participation=participation,
        group_purchase=gp,
        reached_target=count == target,
        became_full=count == maximum,
    )


def leave_group_purchase(db: Session, group_purchase_id: int, user_id: str) -> GroupPurchase:
    now = _now()
    gp = _require_open(get_group_purchase(db, group_purchase_id), now)

    existing = get_participation(db, group_purchase_id, user_id)
    if existing is None or existing.status != ParticipationStatus.JOINED:
        raise NotParticipating()

    try:
        result = db.execute(
            update(GroupPurchase)
            .where(
                GroupPurchase.id == group_purchase_id,
                GroupPurchase.status == GroupPurchaseStatus.ACTIVE,
            )
            .values(
                current_participants=case(
                    (GroupPurchase.current_participants > 0, GroupPurchase.current_participants - 1),
                    else_=0,
                ),
                version=GroupPurchase.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise GroupClosed()

        flipped = db.execute(
            update(Participation)
            .where(
                Participation.id == existing.id,
                Participation.status == ParticipationStatus.JOINED,
            )
            .values(status=ParticipationStatus.LEFT, left_at=now)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            raise NotParticipating()

        _refresh_tracked_price(db, gp)
        db.commit()
    except (GroupClosed, NotParticipating):
        db.rollback()
        raise

    db.refresh(gp)
    logger.info("User %s left group purchase %s (%s/%s)", user_id, gp.id, gp.current_participants, gp.target_participants)
    return gp


def close_group_purchase(db: Session, group_purchase_id: int) -> GroupPurchase:
    gp = get_group_purchase(db, group_purchase_id)
    if gp is None:
        raise GroupPurchaseNotFound()
    if gp.status == GroupPurchaseStatus.ENDED:
        raise GroupClosed()

    gp.status = GroupPurchaseStatus.ENDED
    gp.closed_at = _now()
    gp.version = gp.version + 1
    db.commit()
    db.refresh(gp)
    return gp


def expire_group_purchases(db: Session, now: Optional[dt.datetime] = None) -> List[GroupPurchase]:
    """Mark every active group whose end_time has passed as ended."""
    now = now or _now()
    candidates = db.query(GroupPurchase).filter(GroupPurchase.status == GroupPurchaseStatus.ACTIVE).all()
    expired = [g for g in candidates if pricing.derive_status(g, now) == GroupPurchaseStatus.ENDED]
    for gp in expired:
        gp.status = GroupPurchaseStatus.ENDED
        gp.closed_at = now
        gp.version = gp.version + 1
    if expired:
        db.commit()
        for gp in expired:
            db.refresh(gp)
    return expired


# -----------------------------
# Addresses
# -----------------------------


def user_has_address(db: Session, user_id: str) -> bool:
    return db.query(UserAddress.id).filter(UserAddress.user_id == user_id).first() is not None


def get_addresses(db: Session, user_id: str) -> List[UserAddress]:
    return (
        db.query(UserAddress)
        .filter(UserAddress.user_id == user_id)
        .order_by(UserAddress.is_default.desc(), UserAddress.id.asc())
        .all()
    )


def create_address(db: Session, user_id: str, address_data: dict) -> UserAddress:
    is_first = not user_has_address(db, user_id)
    make_default = bool(address_data.pop("is_default", False)) or is_first

    if make_default and not is_first:
        db.query(UserAddress).filter(UserAddress.user_id == user_id).update(
            {UserAddress.is_default: False}, synchronize_session=False
        )

    address = UserAddress(user_id=user_id, is_default=make_default, **address_data)
    db.add(address)
    db.commit()
    db.refresh(address)
    return address


def delete_address(db: Session, user_id: str, address_id: int) -> Optional[UserAddress]:
    address = (
        db.query(UserAddress)
        .filter(UserAddress.id == address_id, UserAddress.user_id == user_id)
        .first()
    )
    if address is None:
        return None

    was_default = address.is_default
    db.delete(address)
    db.flush()

    if was_default:
        replacement = (
            db.query(UserAddress)
            .filter(UserAddress.user_id == user_id)
            .order_by(UserAddress.id.asc())
            .first()
        )
        if replacement is not None:
            replacement.is_default = True

    db.commit()
    return address
