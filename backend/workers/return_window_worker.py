import asyncio
import logging
from datetime import datetime

from pymongo import ReturnDocument

from database import get_db
from models.order import ReturnWindowStatus
from models.wallet import EarningType
from utils.earnings import settle_item_earning, settle_pending_earnings

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
logger = logging.getLogger(__name__)


async def complete_expired_return_windows(db, now: datetime | None = None) -> dict:
    """
    Close return windows that elapsed without a return and credit the
    seller's post-window earning.

    An item is claimed ACTIVE -> COMPLETED before the ledger write, so
    the earning is inserted by one run only. Claimed items whose ledger
    write failed on an earlier run are settled first.
    """
    now = now or datetime.utcnow()

    retried = await settle_pending_earnings(db, now)

    items = await db.order_items.find({
        "return_window_status": ReturnWindowStatus.ACTIVE.value,
        "return_window_end": {"$lt": now},
        "earnings_credited": {"$ne": True},
    }).to_list(None)

    results = []
    success_count, error_count = 0, 0

    for item in items:
        item_id = str(item["_id"])

        if not item.get("seller_id"):
            error_count += 1
            results.append({"order_item_id": item_id, "success": False, "error": "Item has no seller"})
            logger.error("RETURN_WINDOW_NO_SELLER item=%s", item_id)
            continue

        try:
            claimed = await db.order_items.find_one_and_update(
                {
                    "_id": item["_id"],
                    "return_window_status": ReturnWindowStatus.ACTIVE.value,
                    "earnings_credited": {"$ne": True},
                },
                {"$set": {
                    "return_window_status": ReturnWindowStatus.COMPLETED.value,
                    "earnings_pending": True,
                }},
                return_document=ReturnDocument.AFTER,
            )
            if claimed is None:
                continue

            earning = await settle_item_earning(db, claimed, EarningType.POST_RETURN_WINDOW, now=now)
            success_count += 1
            results.append({
                "order_item_id": item_id,
                "success": True,
                "amount": earning["amount"] if earning else None,
            })
        except Exception as e:
            error_count += 1
            results.append({"order_item_id": item_id, "success": False, "error": str(e)})
            logger.exception("RETURN_WINDOW_ERROR item=%s", item_id)

    if items:
        logger.info(
            "RETURN_WINDOWS_PROCESSED processed=%s success=%s errors=%s",
            len(items), success_count, error_count,
        )

    return {
        "processed": len(items),
        "success_count": success_count,
        "error_count": error_count,
        "retried": retried,
        "results": results,
    }


async def return_window_worker():
    db = get_db()

    while True:
        try:
            await complete_expired_return_windows(db)
        except Exception:
            logger.exception("RETURN_WINDOW_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
