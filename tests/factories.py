"""Shared builders for group_service tests."""
import datetime as dt
from decimal import Decimal

from group_service import crud
from group_service.database import SessionLocal, engine
from group_service.models import Base

ADDRESS = {
    "nickname": "Home",
    "full_name": "Test Shopper",
    "phone_number": "5550100",
    "address_line": "1 Market Street",
    "city": "Springfield",
    "pincode": "12345",
}


def reset_group_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def make_product(db, seller_id="seller-1", tiers=None, minimum=5, maximum=1000, price="10.00"):
    return crud.create_product(
        db,
        seller_id,
        {
            "name": "Basmati Rice 5kg",
            "description": "Long grain",
            "original_price": Decimal(price),
            "minimum_participants": minimum,
            "maximum_participants": maximum,
            "discount_tiers": tiers if tiers is not None else [
                {"participant_count": 5, "final_price": "8.00"},
                {"participant_count": 10, "final_price": "6.00"},
            ],
        },
    )


def make_group(db, product, hours=24, target=None):
    end_time = dt.datetime.now(dt.timezone.utc) + dt.timedelta(hours=hours)
    return crud.create_group_purchase(db, product.id, end_time, target_participants=target)


def give_address(db, user_id):
    return crud.create_address(db, user_id, dict(ADDRESS))


def fresh_session():
    return SessionLocal()
