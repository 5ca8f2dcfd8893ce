from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class GroupPurchaseStatus:
    ACTIVE = "active"
    ENDED = "ended"


class ParticipationStatus:
    JOINED = "joined"
    LEFT = "left"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    original_price = Column(Numeric(10, 2), nullable=False)
    minimum_participants = Column(Integer, nullable=False, default=10)
    maximum_participants = Column(Integer, nullable=False, default=1000)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    discount_tiers = relationship(
        "DiscountTier",
        back_populates="product",
        order_by="DiscountTier.participant_count",
        cascade="all, delete-orphan",
    )
    group_purchases = relationship("GroupPurchase", back_populates="product")


class DiscountTier(Base):
    __tablename__ = "discount_tiers"
    __table_args__ = (
        UniqueConstraint("product_id", "participant_count", name="uq_discount_tier_threshold"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    participant_count = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)
    final_price = Column(Numeric(10, 2), nullable=False)

    product = relationship("Product", back_populates="discount_tiers")


class GroupPurchase(Base):
    """One open round of collective buying for a product.

    current_participants is only ever changed by conditional UPDATE statements
    in crud.join_group_purchase / crud.leave_group_purchase. version is bumped
    on every mutation so readers can tell a fresh row from a cached one.
    """

    __tablename__ = "group_purchases"
    __table_args__ = (
        CheckConstraint("current_participants >= 0", name="ck_group_purchase_participants_non_negative"),
        CheckConstraint("target_participants >= 1", name="ck_group_purchase_target_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    target_participants = Column(Integer, nullable=False)
    current_participants = Column(Integer, nullable=False, default=0)
    current_price = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=GroupPurchaseStatus.ACTIVE, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product = relationship("Product", back_populates="group_purchases")
    participants = relationship("Participation", back_populates="group_purchase")


class Participation(Base):
    __tablename__ = "group_participants"
    __table_args__ = (
        UniqueConstraint("group_purchase_id", "user_id", name="uq_group_participant"),
    )

    id = Column(Integer, primary_key=True, index=True)
    group_purchase_id = Column(Integer, ForeignKey("group_purchases.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=ParticipationStatus.JOINED)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
    left_at = Column(DateTime(timezone=True), nullable=True)

    group_purchase = relationship("GroupPurchase", back_populates="participants")


class UserAddress(Base):
    __tablename__ = "user_addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    nickname = Column(String(100), nullable=False)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=False)
    address_line = Column(Text, nullable=False)
    city = Column(String(100), nullable=False)
    pincode = Column(String(20), nullable=False)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True, default="India")
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
