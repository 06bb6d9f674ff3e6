import asyncio
import logging
from datetime import datetime

from database import get_db
from models.order import RefundReconciliationStatus
from utils.refunds import retry_reconciliation

CHECK_INTERVAL_SECONDS = 60 * 2  # every 2 minutes
logger = logging.getLogger(__name__)


async def retry_due_refunds(db, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()

    items = await db.refund_reconciliations.find({
        "status": RefundReconciliationStatus.OPEN.value,
        "next_attempt_at": {"$lte": now},
    }).to_list(None)

    resolved, pending = 0, 0
    for item in items:
        try:
            if await retry_reconciliation(db, item, now=now):
                resolved += 1
            else:
                pending += 1
        except Exception:
            pending += 1
            logger.exception("REFUND_RETRY_ERROR order=%s", item.get("order_number"))

    return {"attempted": len(items), "resolved": resolved, "pending": pending}


async def refund_retry_worker():
    db = get_db()

    while True:
        try:
            await retry_due_refunds(db)
        except Exception:
            logger.exception("REFUND_RETRY_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
