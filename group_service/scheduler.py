"""Background sweeper that ends group purchases whose end_time has passed."""
import asyncio
import logging
import os
from typing import List, Optional

from .cache import ACTIVE_GROUPS_PREFIX, ResponseCache, group_key
from .crud import expire_group_purchases, get_active_participant_ids
from .database import SessionLocal
from .messaging import build_group_event, publish_group_event

logger = logging.getLogger(__name__)

EXPIRY_CHECK_SECONDS = float(os.getenv("EXPIRY_CHECK_SECONDS", "60"))


def sweep_expired(cache: Optional[ResponseCache] = None) -> List[int]:
    """End overdue groups and announce them. Returns the ids that were ended."""
    db = SessionLocal()
    try:
        expired = expire_group_purchases(db)
        events = [
            build_group_event("group.ended", gp, participant_ids=get_active_participant_ids(db, gp.id))
            for gp in expired
        ]
        ended_ids = [gp.id for gp in expired]
    finally:
        db.close()

    if cache is not None and ended_ids:
        for gp_id in ended_ids:
            cache.invalidate(group_key(gp_id))
        cache.invalidate_prefix(ACTIVE_GROUPS_PREFIX)

    for payload in events:
        publish_group_event("group.ended", payload)
        logger.info("Group purchase %s ended at its deadline", payload["group_purchase_id"])

    return ended_ids


async def scheduler_loop(cache: Optional[ResponseCache] = None, interval: float = EXPIRY_CHECK_SECONDS) -> None:
    while True:
        try:
            await asyncio.to_thread(sweep_expired, cache)
        except Exception:
            logger.exception("Expiry sweep failed")
        await asyncio.sleep(interval)


def start_scheduler(cache: Optional[ResponseCache] = None) -> asyncio.Task:
    task = asyncio.create_task(scheduler_loop(cache))
    logger.info("Group purchase expiry scheduler started (every %ss)", EXPIRY_CHECK_SECONDS)
    return task
