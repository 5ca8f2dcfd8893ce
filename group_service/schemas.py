from pydantic import BaseModel, Field, model_validator
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from enum import Enum


class GroupPurchaseStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


# Discount tiers
class DiscountTierIn(BaseModel):
    participant_count: int = Field(..., ge=1, description="Participants needed to unlock this tier")
    final_price: Decimal = Field(..., gt=0, description="Unit price once the tier is unlocked")
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class DiscountTierOut(BaseModel):
    id: int
    participant_count: int
    discount_percentage: Decimal
    final_price: Decimal

    model_config = {"from_attributes": True}


class DiscountTiersReplace(BaseModel):
    discount_tiers: List[DiscountTierIn] = Field(default_factory=list)


# Products
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    original_price: Decimal = Field(..., gt=0)
    minimum_participants: int = Field(10, ge=1)
    maximum_participants: int = Field(1000, ge=1)
    discount_tiers: List[DiscountTierIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.maximum_participants < self.minimum_participants:
            raise ValueError("maximum_participants must be >= minimum_participants")
        return self


class ProductOut(BaseModel):
    id: int
    seller_id: str
    name: str
    description: Optional[str] = None
    original_price: Decimal
    minimum_participants: int
    maximum_participants: int
    is_active: bool
    discount_tiers: List[DiscountTierOut] = []

    model_config = {"from_attributes": True}


# Group purchases
class GroupPurchaseCreate(BaseModel):
    product_id: int = Field(..., gt=0)
    end_time: datetime
    target_participants: Optional[int] = Field(None, ge=1, description="Defaults to the product minimum")


class GroupProgress(BaseModel):
    status: GroupPurchaseStatus
    display_price: Decimal
    current_price: Decimal
    original_price: Decimal
    savings: Decimal
    is_complete: bool
    remaining_participants: int
    progress_percent: float
    participants_to_next_tier: int


class GroupPurchaseOut(BaseModel):
    id: int
    product_id: int
    target_participants: int
    current_participants: int
    maximum_participants: int
    current_price: Decimal
    status: GroupPurchaseStatus
    end_time: datetime
    closed_at: Optional[datetime] = None
    version: int
    product: ProductOut
    progress: GroupProgress


class GroupPurchaseListResponse(BaseModel):
    group_purchases: List[GroupPurchaseOut]
    total: int
    skip: int
    limit: int


# Participation
class JoinRequest(BaseModel):
    quantity: int = Field(1, gt=0, le=100)


class ParticipationOut(BaseModel):
    id: int
    group_purchase_id: int
    user_id: str
    quantity: int
    status: str
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ParticipationStatusOut(BaseModel):
    is_participating: bool
    participation: Optional[ParticipationOut] = None


class JoinResponse(BaseModel):
    participation: ParticipationOut
    group_purchase: GroupPurchaseOut


class ParticipatingGroupsOut(BaseModel):
    group_purchase_ids: List[int]


# Addresses
class AddressCreate(BaseModel):
    nickname: str = Field(..., min_length=1, max_length=100, description="e.g. Home, Office")
    full_name: str = Field(..., min_length=1, max_length=255)
    phone_number: str = Field(..., min_length=5, max_length=20)
    address_line: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1, max_length=100)
    pincode: str = Field(..., min_length=3, max_length=20)
    state: Optional[str] = None
    country: Optional[str] = "India"
    is_default: bool = False


class AddressOut(BaseModel):
    id: int
    user_id: str
    nickname: str
    full_name: str
    phone_number: str
    address_line: str
    city: str
    pincode: str
    state: Optional[str] = None
    country: Optional[str] = None
    is_default: bool

    model_config = {"from_attributes": True}
