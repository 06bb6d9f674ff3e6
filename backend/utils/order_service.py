"""
Order lifecycle operations shared by webhooks, admin routes and workers.

Every status change goes through ``apply_order_transition``; notification
sends are guarded by conditional claims on the order document so replays
and overlapping runs deliver each message at most once.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from pymongo import ReturnDocument

from config.constants import RETURN_WINDOW_DAYS, SELLER_RESPONSE_MINUTES
from models.order import OrderStatus, PaymentStatus, ReturnWindowStatus
from models.wallet import EarningType
from utils.earnings import settle_item_earning
from utils.notifications import (
    notify_admin_order_update,
    notify_customer_order_cancelled,
    notify_seller_new_order,
)
from utils.order_state import OrderEvent, apply_order_transition
from utils.order_timeline import record_order_event
from utils.refunds import initiate_order_refund
from utils.validators import phones_match

logger = logging.getLogger(__name__)

ADMIN_STATUS_PENDING_SELLER = "PENDING_SELLER_RESPONSE"
ADMIN_STATUS_ACCEPTED = "ACCEPTED"
ADMIN_STATUS_REJECTED = "REJECTED"
ADMIN_STATUS_TIMEOUT = "TIMEOUT_CANCELLED"
ADMIN_STATUS_ADMIN_REJECTED = "ADMIN_REJECTED"

REASON_SELLER_REJECTED = "Rejected by seller"
REASON_SELLER_TIMEOUT = "Seller response timeout"


# ==============================
# Lookups
# ==============================

async def get_order_items(db, order_id) -> list[dict]:
    return await db.order_items.find({"order_id": order_id}).to_list(None)


async def get_customer(db, order: dict) -> dict | None:
    if not order.get("user_id"):
        return None
    return await db.users.find_one({"_id": order["user_id"]})


def compute_primary_seller(items: list[dict]):
    """Seller holding the largest share of order value."""
    totals = defaultdict(float)
    for item in items:
        if item.get("seller_id"):
            totals[item["seller_id"]] += float(item.get("price") or 0) * int(item.get("quantity") or 1)

    if totals:
        return max(totals, key=totals.get)

    return items[0].get("seller_id") if items else None


def group_items_by_seller(items: list[dict]) -> dict:
    groups = defaultdict(list)
    for item in items:
        groups[item.get("seller_id")].append(item)
    return dict(groups)


async def reconcile_item_sellers(db, order: dict, items: list[dict]) -> list[dict]:
    """
    Backfill missing item sellers from their products and keep
    ``primary_seller_id`` in step with the items.
    """
    for item in items:
        if item.get("seller_id"):
            continue

        product = await db.products.find_one({"_id": item.get("product_id")})
        if not product or not product.get("seller_id"):
            logger.warning(
                "ITEM_SELLER_UNRESOLVED order=%s item=%s",
                order.get("order_number"), item["_id"],
            )
            continue

        await db.order_items.update_one(
            {"_id": item["_id"]},
            {"$set": {"seller_id": product["seller_id"]}},
        )
        item["seller_id"] = product["seller_id"]

    primary = compute_primary_seller(items)
    if primary and primary != order.get("primary_seller_id"):
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"primary_seller_id": primary}},
        )
        order["primary_seller_id"] = primary

    return items


async def find_replying_seller(db, order: dict, phone: str) -> dict | None:
    """The seller of ``order`` whose phone matches ``phone``, if any."""
    items = await get_order_items(db, order["_id"])
    seller_ids = {i["seller_id"] for i in items if i.get("seller_id")}
    if order.get("primary_seller_id"):
        seller_ids.add(order["primary_seller_id"])

    if not seller_ids:
        return None

    sellers = await db.sellers.find({"_id": {"$in": list(seller_ids)}}).to_list(None)
    for seller in sellers:
        if phones_match(seller.get("phone"), phone):
            return seller
    return None


# ==============================
# Intake
# ==============================

async def capture_payment(db, order: dict, *, payment_id=None, now: datetime) -> dict | None:
    """
    Mark the payment SUCCESSFUL and start the seller response window.
    Returns None when the payment was already captured.
    """
    return await db.orders.find_one_and_update(
        {
            "_id": order["_id"],
            "status": OrderStatus.PENDING.value,
            "payment_status": {"$ne": PaymentStatus.SUCCESSFUL.value},
        },
        {"$set": {
            "payment_status": PaymentStatus.SUCCESSFUL.value,
            "paid_at": now,
            "gateway_payment_id": payment_id,
            "seller_response_deadline": now + timedelta(minutes=SELLER_RESPONSE_MINUTES),
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )


async def notify_sellers_once(db, order: dict, items: list[dict], *, now: datetime) -> dict:
    sent, failed, skipped = 0, 0, 0

    for seller_id, seller_items in group_items_by_seller(items).items():
        if seller_id is None:
            skipped += 1
            continue

        seller = await db.sellers.find_one({"_id": seller_id})
        phone = (seller or {}).get("phone")
        if not phone:
            logger.warning("SELLER_PHONE_MISSING order=%s seller=%s", order.get("order_number"), seller_id)
            skipped += 1
            continue

        slot = f"seller_notifications.{seller_id}"
        claim = await db.orders.update_one(
            {"_id": order["_id"], slot: {"$exists": False}},
            {"$set": {slot: {"status": "SENDING", "phone": phone, "claimed_at": now}}},
        )
        if claim.modified_count == 0:
            skipped += 1
            continue

        try:
            delivered = await notify_seller_new_order(order, seller_items, phone)
        except Exception:
            logger.exception("SELLER_NOTIFICATION_ERROR order=%s seller=%s", order.get("order_number"), seller_id)
            delivered = False

        if delivered:
            await db.orders.update_one(
                {"_id": order["_id"]},
                {"$set": {
                    slot: {"status": "SENT", "phone": phone, "sent_at": now},
                    "seller_notified": True,
                    "seller_phone": phone,
                }},
            )
            sent += 1
        else:
            await db.orders.update_one({"_id": order["_id"]}, {"$unset": {slot: ""}})
            failed += 1

    return {"sent": sent, "failed": failed, "skipped": skipped}


async def notify_admin_once(db, order: dict, customer: dict | None, status: str) -> bool:
    """True once the admin has been told, by this call or an earlier one."""
    claim = await db.orders.update_one(
        {"_id": order["_id"], "admin_notified": {"$ne": True}},
        {"$set": {"admin_notified": True}},
    )
    if claim.modified_count == 0:
        return True

    try:
        delivered = await notify_admin_order_update(order, customer, status)
    except Exception:
        logger.exception("ADMIN_NOTIFICATION_ERROR order=%s", order.get("order_number"))
        delivered = False
    if delivered:
        return True

    await db.orders.update_one({"_id": order["_id"]}, {"$set": {"admin_notified": False}})
    return False


async def process_payment_success(db, order: dict, *, payment_id=None, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()

    if order.get("status") != OrderStatus.PENDING.value:
        logger.info("PAYMENT_SUCCESS_IGNORED order=%s status=%s", order.get("order_number"), order.get("status"))
        return {"message": "Order already processed", "status": order.get("status")}

    captured = await capture_payment(db, order, payment_id=payment_id, now=now)
    if captured:
        order = captured
        await record_order_event(
            db,
            order_id=order["_id"],
            event="PAYMENT_CAPTURED",
            actor_role="system",
            metadata={"payment_id": payment_id},
        )
    else:
        order = await db.orders.find_one({"_id": order["_id"]})

    items = await get_order_items(db, order["_id"])
    items = await reconcile_item_sellers(db, order, items)

    sellers = await notify_sellers_once(db, order, items, now=now)
    customer = await get_customer(db, order)
    admin_notified = await notify_admin_once(db, order, customer, ADMIN_STATUS_PENDING_SELLER)

    logger.info(
        "PAYMENT_PROCESSED order=%s captured=%s sellers_sent=%s sellers_failed=%s",
        order.get("order_number"), captured is not None, sellers["sent"], sellers["failed"],
    )

    return {
        "message": "Payment processed",
        "order_id": str(order["_id"]),
        "payment_captured": captured is not None,
        "sellers": sellers,
        "admin_notified": admin_notified,
    }


async def mark_payment_failed(db, order: dict, *, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    result = await db.orders.update_one(
        {
            "_id": order["_id"],
            "status": OrderStatus.PENDING.value,
            "payment_status": PaymentStatus.PENDING.value,
        },
        {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": now}},
    )
    return result.modified_count == 1


# ==============================
# Seller response
# ==============================

async def accept_order(db, order: dict, event: OrderEvent, *, actor_role: str, actor_id=None, now: datetime | None = None):
    now = now or datetime.utcnow()

    fields = {"confirmed_at": now}
    if actor_role == "seller":
        fields.update({"seller_notified": True, "seller_confirmed_at": now})

    updated = await apply_order_transition(
        db,
        order,
        event,
        actor_role=actor_role,
        actor_id=actor_id,
        extra_fields=fields,
        now=now,
    )
    if updated is None:
        return None

    customer = await get_customer(db, updated)
    await notify_admin_order_update(updated, customer, ADMIN_STATUS_ACCEPTED)
    return updated


async def cancel_order(
    db,
    order: dict,
    event: OrderEvent,
    *,
    reason: str,
    admin_status: str,
    actor_role: str,
    actor_id=None,
    now: datetime | None = None,
):
    """
    Cancel, refund, then notify customer and admin.

    Returns None without side effects when another writer moved the
    order first. Raises InvalidTransition when cancellation is illegal.
    """
    now = now or datetime.utcnow()

    updated = await apply_order_transition(
        db,
        order,
        event,
        actor_role=actor_role,
        actor_id=actor_id,
        extra_fields={"cancelled_at": now, "cancel_reason": reason},
        note=reason,
        now=now,
    )
    if updated is None:
        logger.info("CANCEL_SKIPPED order=%s reason=lost_claim", order.get("order_number"))
        return None

    try:
        await initiate_order_refund(db, updated, reason, now=now)
    except Exception:
        logger.exception("CANCEL_REFUND_ERROR order=%s", updated.get("order_number"))

    customer = await get_customer(db, updated)
    if await notify_customer_order_cancelled(updated, customer, reason):
        await db.orders.update_one(
            {"_id": updated["_id"]},
            {"$set": {"customer_notified": True}},
        )
    await notify_admin_order_update(updated, customer, admin_status)

    return await db.orders.find_one({"_id": updated["_id"]})


async def handle_seller_reply(db, order: dict, action: str, seller: dict, *, now: datetime | None = None):
    if action == "accept":
        return await accept_order(
            db, order, OrderEvent.SELLER_ACCEPTED,
            actor_role="seller", actor_id=seller["_id"], now=now,
        )

    return await cancel_order(
        db,
        order,
        OrderEvent.SELLER_REJECTED,
        reason=REASON_SELLER_REJECTED,
        admin_status=ADMIN_STATUS_REJECTED,
        actor_role="seller",
        actor_id=seller["_id"],
        now=now,
    )


# ==============================
# Delivery and returns
# ==============================

async def open_return_windows(db, order: dict, *, now: datetime | None = None) -> dict:
    """
    Returnable items get a 7-day window; the rest are paid out at once.
    Items that already have a window status are left alone.
    """
    now = now or datetime.utcnow()
    opened, credited = 0, 0

    for item in await get_order_items(db, order["_id"]):
        if item.get("is_returnable", True):
            result = await db.order_items.update_one(
                {"_id": item["_id"], "return_window_status": None},
                {"$set": {
                    "return_window_status": ReturnWindowStatus.ACTIVE.value,
                    "return_window_start": now,
                    "return_window_end": now + timedelta(days=RETURN_WINDOW_DAYS),
                }},
            )
            opened += result.modified_count
            continue

        claim = {"return_window_status": ReturnWindowStatus.NOT_APPLICABLE.value}
        if item.get("seller_id"):
            claim["earnings_pending"] = True

        result = await db.order_items.update_one(
            {"_id": item["_id"], "return_window_status": None},
            {"$set": claim},
        )
        if result.modified_count == 0:
            continue

        if not item.get("seller_id"):
            logger.error("IMMEDIATE_EARNING_NO_SELLER order=%s item=%s", order.get("order_number"), item["_id"])
            continue
        try:
            if await settle_item_earning(db, item, EarningType.IMMEDIATE, now=now):
                credited += 1
        except Exception:
            # left pending for the return-window worker
            logger.exception("IMMEDIATE_EARNING_FAILED order=%s item=%s", order.get("order_number"), item["_id"])

    return {"windows_opened": opened, "immediate_earnings": credited}


async def mark_delivered(db, order: dict, *, actor_role: str, actor_id=None, now: datetime | None = None):
    now = now or datetime.utcnow()

    updated = await apply_order_transition(
        db,
        order,
        OrderEvent.DELIVERED,
        actor_role=actor_role,
        actor_id=actor_id,
        extra_fields={"delivered_at": now},
        now=now,
    )
    if updated is None:
        return None

    await open_return_windows(db, updated, now=now)
    return updated


async def mark_item_returned(db, order: dict, item: dict, *, actor_role: str, actor_id=None, now: datetime | None = None):
    """
    Close an item's open window as RETURNED and move the order to
    RETURNED. Returns None when the window is no longer ACTIVE.
    """
    now = now or datetime.utcnow()

    claimed = await db.order_items.find_one_and_update(
        {"_id": item["_id"], "return_window_status": ReturnWindowStatus.ACTIVE.value},
        {"$set": {
            "return_window_status": ReturnWindowStatus.RETURNED.value,
            "returned_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        return None

    if order.get("status") == OrderStatus.DELIVERED.value:
        await apply_order_transition(
            db,
            order,
            OrderEvent.RETURN_APPROVED,
            actor_role=actor_role,
            actor_id=actor_id,
            note=f"Item {item['_id']} returned",
            now=now,
        )
    return claimed


async def mark_order_returned(db, order: dict, *, actor_role: str, actor_id=None, now: datetime | None = None):
    """
    Move a delivered order to RETURNED and close every open return window
    as RETURNED so none of its items is credited later.
    """
    now = now or datetime.utcnow()

    updated = await apply_order_transition(
        db,
        order,
        OrderEvent.RETURN_APPROVED,
        actor_role=actor_role,
        actor_id=actor_id,
        extra_fields={"returned_at": now},
        note="Order returned",
        now=now,
    )
    if updated is None:
        return None

    for item in await get_order_items(db, order["_id"]):
        await mark_item_returned(db, updated, item, actor_role=actor_role, actor_id=actor_id, now=now)

    return updated
