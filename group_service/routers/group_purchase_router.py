import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import pricing
from ..auth import ensure_owner_or_admin, get_current_user
from ..cache import ACTIVE_GROUPS_PREFIX, active_groups_key, group_key
from ..crud import (
    close_group_purchase,
    count_active_group_purchases,
    create_group_purchase,
    get_active_group_purchases,
    get_active_participant_ids,
    get_group_purchase,
    get_participation,
    get_product,
    get_user_participating_group_ids,
    join_group_purchase,
    leave_group_purchase,
)
from ..database import get_db
from ..errors import GroupPurchaseError, GroupPurchaseNotFound, ProductNotFound
from ..messaging import build_group_event, publish_group_event
from ..models import GroupPurchase, GroupPurchaseStatus, ParticipationStatus
from ..schemas import (
    GroupPurchaseCreate,
    GroupPurchaseListResponse,
    GroupPurchaseOut,
    JoinRequest,
    JoinResponse,
    ParticipatingGroupsOut,
    ParticipationOut,
    ParticipationStatusOut,
    ProductOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/group-purchases", tags=["Group Purchases"])


def etag_for(group_purchase_id: int, version: int) -> str:
    return f'W/"gp-{group_purchase_id}-{version}"'


def serialize_group(gp: GroupPurchase) -> dict:
    product = gp.product
    out = GroupPurchaseOut(
        id=gp.id,
        product_id=gp.product_id,
        target_participants=gp.target_participants,
        current_participants=gp.current_participants,
        maximum_participants=product.maximum_participants,
        current_price=gp.current_price,
        status=pricing.derive_status(gp),
        end_time=gp.end_time,
        closed_at=gp.closed_at,
        version=gp.version,
        product=ProductOut.model_validate(product),
        progress=pricing.summarize(product, gp),
    )
    return out.model_dump(mode="json")


def _raise_http(e: GroupPurchaseError):
    raise HTTPException(status_code=e.status_code, detail=e.to_detail())


def _cache_ttl(cache, groups) -> float:
    # A cached active group must not outlive its end_time, or its status stays frozen
    ttl = cache.default_ttl
    for gp in groups:
        if gp.status == GroupPurchaseStatus.ACTIVE:
            ttl = min(ttl, pricing.seconds_until_end(gp))
    return ttl


def _invalidate(request: Request, group_purchase_id: int) -> None:
    cache = request.app.state.cache
    cache.invalidate(group_key(group_purchase_id))
    cache.invalidate_prefix(ACTIVE_GROUPS_PREFIX)


@router.post("", response_model=GroupPurchaseOut, status_code=201)
def start_group_purchase(
    body: GroupPurchaseCreate,
    request: Request,
    response: Response,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    product = get_product(db, body.product_id)
    if not product:
        _raise_http(ProductNotFound())
    ensure_owner_or_admin(current_user, product.seller_id)

    try:
        gp = create_group_purchase(db, body.product_id, body.end_time, body.target_participants)
    except GroupPurchaseError as e:
        _raise_http(e)

    request.app.state.cache.invalidate_prefix(ACTIVE_GROUPS_PREFIX)
    response.headers["ETag"] = etag_for(gp.id, gp.version)
    logger.info("Group purchase %s started for product %s", gp.id, product.id)
    return serialize_group(gp)


@router.get("", response_model=GroupPurchaseListResponse)
def list_active_group_purchases(
    request: Request,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    cache = request.app.state.cache
    key = active_groups_key(skip, limit)
    cached = cache.get(key)
    if cached is not None:
        return JSONResponse(content=cached, headers={"X-Cache-Status": "HIT"})

    groups = get_active_group_purchases(db, skip=skip, limit=limit)
    payload = {
        "group_purchases": [serialize_group(g) for g in groups],
        "total": count_active_group_purchases(db),
        "skip": skip,
        "limit": limit,
    }
    cache.set(key, payload, ttl=_cache_ttl(cache, groups))
    return JSONResponse(content=payload, headers={"X-Cache-Status": "MISS"})


@router.get("/me", response_model=ParticipatingGroupsOut)
def my_group_purchases(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"group_purchase_ids": get_user_participating_group_ids(db, current_user["id"])}


@router.get("/{group_purchase_id}", response_model=GroupPurchaseOut)
def view_group_purchase(
    group_purchase_id: int,
    request: Request,
    db: Session = Depends(get_db),
):
    cache = request.app.state.cache
    no_cache = "no-cache" in (request.headers.get("Cache-Control") or "")
    key = group_key(group_purchase_id)

    payload: Optional[dict] = None if no_cache else cache.get(key)
    cache_status = "HIT" if payload is not None else "MISS"
    if payload is None:
        gp = get_group_purchase(db, group_purchase_id)
        if not gp:
            _raise_http(GroupPurchaseNotFound())
        payload = serialize_group(gp)
        cache.set(key, payload, ttl=_cache_ttl(cache, [gp]))

    etag = etag_for(payload["id"], payload["version"])
    if request.headers.get("If-None-Match") == etag:
        return Response(status_code=304, headers={"ETag": etag, "X-Cache-Status": cache_status})
    return JSONResponse(content=payload, headers={"ETag": etag, "X-Cache-Status": cache_status})


@router.get("/{group_purchase_id}/participation", response_model=ParticipationStatusOut)
def participation_status(
    group_purchase_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not get_group_purchase(db, group_purchase_id):
        _raise_http(GroupPurchaseNotFound())
    participation = get_participation(db, group_purchase_id, current_user["id"])
    if participation is None or participation.status != ParticipationStatus.JOINED:
        return {"is_participating": False, "participation": None}
    return {"is_participating": True, "participation": ParticipationOut.model_validate(participation)}


@router.post("/{group_purchase_id}/join", response_model=JoinResponse)
def join(
    group_purchase_id: int,
    request: Request,
    response: Response,
    body: Optional[JoinRequest] = None,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = current_user["id"]
    quantity = body.quantity if body else 1
    try:
        result = join_group_purchase(db, group_purchase_id, user_id, quantity=quantity)
    except GroupPurchaseError as e:
        _raise_http(e)
    except SQLAlchemyError as e:
        logger.exception("Join of group purchase %s by %s failed", group_purchase_id, user_id)
        raise HTTPException(status_code=500, detail=f"Failed to join group purchase: {e.__class__.__name__}")

    gp = result.group_purchase
    _invalidate(request, gp.id)

    publish_group_event("group.joined", build_group_event("group.joined", gp, user_id=user_id))
    if result.reached_target or result.became_full:
        participant_ids = get_active_participant_ids(db, gp.id)
        if result.reached_target:
            publish_group_event(
                "group.target_reached",
                build_group_event("group.target_reached", gp, participant_ids=participant_ids),
            )
        if result.became_full:
            publish_group_event(
                "group.full",
                build_group_event("group.full", gp, participant_ids=participant_ids),
            )

    response.headers["ETag"] = etag_for(gp.id, gp.version)
    return {
        "participation": ParticipationOut.model_validate(result.participation),
        "group_purchase": serialize_group(gp),
    }


@router.delete("/{group_purchase_id}/leave", response_model=GroupPurchaseOut)
def leave(
    group_purchase_id: int,
    request: Request,
    response: Response,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = current_user["id"]
    try:
        gp = leave_group_purchase(db, group_purchase_id, user_id)
    except GroupPurchaseError as e:
        _raise_http(e)
    except SQLAlchemyError as e:
        logger.exception("Leave of group purchase %s by %s failed", group_purchase_id, user_id)
        raise HTTPException(status_code=500, detail=f"Failed to leave group purchase: {e.__class__.__name__}")

    _invalidate(request, gp.id)
    publish_group_event("group.left", build_group_event("group.left", gp, user_id=user_id))
    response.headers["ETag"] = etag_for(gp.id, gp.version)
    return serialize_group(gp)


@router.post("/{group_purchase_id}/close", response_model=GroupPurchaseOut)
def close(
    group_purchase_id: int,
    request: Request,
    response: Response,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    gp = get_group_purchase(db, group_purchase_id)
    if not gp:
        _raise_http(GroupPurchaseNotFound())
    ensure_owner_or_admin(current_user, gp.product.seller_id)

    try:
        gp = close_group_purchase(db, group_purchase_id)
    except GroupPurchaseError as e:
        _raise_http(e)
    except SQLAlchemyError as e:
        logger.exception("Close of group purchase %s failed", group_purchase_id)
        raise HTTPException(status_code=500, detail=f"Failed to close group purchase: {e.__class__.__name__}")

    _invalidate(request, gp.id)
    publish_group_event(
        "group.ended",
        build_group_event("group.ended", gp, participant_ids=get_active_participant_ids(db, gp.id)),
    )
    response.headers["ETag"] = etag_for(gp.id, gp.version)
    logger.info("Group purchase %s closed by %s", gp.id, current_user["id"])
    return serialize_group(gp)
