import asyncio
import logging
from datetime import datetime

from database import get_db
from models.order import OrderStatus, PaymentStatus
from utils.order_service import (
    ADMIN_STATUS_TIMEOUT,
    REASON_SELLER_TIMEOUT,
    cancel_order,
)
from utils.order_state import InvalidTransition, OrderEvent

CHECK_INTERVAL_SECONDS = 60  # every minute
logger = logging.getLogger(__name__)


async def sweep_timed_out_orders(db, now: datetime | None = None) -> int:
    """
    Cancel and refund paid orders whose seller never answered.

    Orders are processed one at a time. Each cancellation starts with an
    atomic claim, so overlapping sweeps handle an order once.
    Returns how many orders this run cancelled.
    """
    now = now or datetime.utcnow()

    orders = await db.orders.find({
        "status": OrderStatus.PENDING.value,
        "payment_status": PaymentStatus.SUCCESSFUL.value,
        "seller_response_deadline": {"$lt": now},
    }).to_list(None)

    if orders:
        logger.info("ORDER_TIMEOUT_SWEEP found=%s", len(orders))

    cancelled = 0
    for order in orders:
        try:
            result = await cancel_order(
                db,
                order,
                OrderEvent.SELLER_TIMEOUT,
                reason=REASON_SELLER_TIMEOUT,
                admin_status=ADMIN_STATUS_TIMEOUT,
                actor_role="system",
                now=now,
            )
            if result is not None:
                cancelled += 1
        except InvalidTransition:
            logger.info("ORDER_TIMEOUT_SKIPPED order=%s", order.get("order_number"))
        except Exception:
            logger.exception("ORDER_TIMEOUT_ERROR order=%s", order.get("order_number"))

    return cancelled


async def order_timeout_worker():
    db = get_db()

    while True:
        try:
            await sweep_timed_out_orders(db)
        except Exception:
            logger.exception("ORDER_TIMEOUT_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
