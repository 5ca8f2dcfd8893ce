import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import ensure_owner_or_admin, get_current_user
from ..cache import ACTIVE_GROUPS_PREFIX, group_key
from ..crud import create_product, get_discount_tiers, get_product, replace_discount_tiers
from ..database import get_db
from ..errors import GroupPurchaseError, ProductNotFound
from ..schemas import DiscountTierOut, DiscountTiersReplace, ProductCreate, ProductOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["Products"])


@router.post("", response_model=ProductOut, status_code=201)
def create_group_product(
    body: ProductCreate,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return create_product(db, current_user["id"], body.model_dump())
    except GroupPurchaseError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Discount tier thresholds must be unique")


@router.get("/{product_id}", response_model=ProductOut)
def view_product(product_id: int, db: Session = Depends(get_db)):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail=ProductNotFound().to_detail())
    return product


@router.get("/{product_id}/discount-tiers", response_model=list[DiscountTierOut])
def view_discount_tiers(product_id: int, db: Session = Depends(get_db)):
    if not get_product(db, product_id):
        raise HTTPException(status_code=404, detail=ProductNotFound().to_detail())
    return get_discount_tiers(db, product_id)


@router.put("/{product_id}/discount-tiers", response_model=ProductOut)
def replace_product_discount_tiers(
    product_id: int,
    body: DiscountTiersReplace,
    request: Request,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail=ProductNotFound().to_detail())
    ensure_owner_or_admin(current_user, product.seller_id)

    try:
        product = replace_discount_tiers(db, product_id, [t.model_dump() for t in body.discount_tiers])
    except GroupPurchaseError as e:
        db.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())

    cache = request.app.state.cache
    for gp in product.group_purchases:
        cache.invalidate(group_key(gp.id))
    cache.invalidate_prefix(ACTIVE_GROUPS_PREFIX)
    logger.info("Discount tiers of product %s replaced (%s tiers)", product_id, len(product.discount_tiers))
    return product
