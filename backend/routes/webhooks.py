import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from config.env import ADMIN_NOTIFICATION_PHONE
from database import get_db
from utils.cashfree import CashfreeError, verify_webhook_signature
from utils.guards import parse_object_id
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)
from utils.order_service import (
    find_replying_seller,
    handle_seller_reply,
    mark_payment_failed,
    process_payment_success,
)
from utils.order_state import InvalidTransition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])

PAYMENT_WEBHOOK_SCOPE = "cashfree_payment_webhook"
SELLER_ACTIONS = {"accept", "reject"}


# =========================================================
# PAYMENT WEBHOOK (CASHFREE)
# =========================================================

def _extract_payment(body: dict) -> tuple[str, str, str | None]:
    """order_id, payment_status and gateway payment id from either body shape."""
    data = body.get("data") if isinstance(body.get("data"), dict) else body

    order = data.get("order") or {}
    payment = data.get("payment") or {}
    if not isinstance(order, dict) or not isinstance(payment, dict):
        raise HTTPException(400, "Malformed payment payload")

    order_id = order.get("order_id")
    payment_status = payment.get("payment_status")
    if not order_id or not payment_status:
        raise HTTPException(400, "Missing order_id or payment_status")

    return str(order_id), str(payment_status).upper(), payment.get("cf_payment_id")


@router.post("/payment-webhook")
async def payment_webhook(request: Request, db=Depends(get_db)):
    """
    Cashfree payment notification.

    Guarantees:
    - Signature verified before anything is read
    - Payment captured once, deadline set once
    - Each seller notified at most once across retries
    """
    raw_body = await request.body()

    try:
        verified = verify_webhook_signature(
            raw_body=raw_body,
            timestamp=request.headers.get("x-webhook-timestamp", ""),
            received_signature=request.headers.get("x-webhook-signature", ""),
        )
    except CashfreeError:
        logger.error("PAYMENT_WEBHOOK_SECRET_MISSING")
        raise HTTPException(500, "Webhook secret not configured")

    if not verified:
        raise HTTPException(401, "Invalid webhook signature")

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid JSON payload")

    order_number, payment_status, payment_id = _extract_payment(body)

    order = await db.orders.find_one({"order_number": order_number})
    if not order:
        logger.warning("PAYMENT_WEBHOOK_ORDER_NOT_FOUND order=%s", order_number)
        raise HTTPException(404, "Order not found")

    if payment_status == "FAILED":
        updated = await mark_payment_failed(db, order)
        return {"message": "Payment failure recorded", "updated": updated}

    if payment_status != "SUCCESS":
        return {"message": f"Payment status {payment_status} ignored"}

    idem_key = f"cashfree:{order_number}:{payment_status}"
    cached = await reserve_idempotency_key(db=db, key=idem_key, scope=PAYMENT_WEBHOOK_SCOPE)
    if cached:
        return cached

    try:
        response = await process_payment_success(db, order, payment_id=payment_id)
    except Exception as e:
        await fail_idempotency_key(db=db, key=idem_key, scope=PAYMENT_WEBHOOK_SCOPE, error=str(e))
        raise

    # leave the key retryable so the next delivery resends
    if response.get("sellers", {}).get("failed"):
        await fail_idempotency_key(db=db, key=idem_key, scope=PAYMENT_WEBHOOK_SCOPE, error="seller notification failed")
    elif ADMIN_NOTIFICATION_PHONE and response.get("admin_notified") is False:
        await fail_idempotency_key(db=db, key=idem_key, scope=PAYMENT_WEBHOOK_SCOPE, error="admin notification failed")
    else:
        await complete_idempotency_key(db=db, key=idem_key, scope=PAYMENT_WEBHOOK_SCOPE, response=response)

    return response


# =========================================================
# SELLER REPLY WEBHOOK (GUPSHUP)
# =========================================================

@router.get("/gupshup-reply")
async def gupshup_validation():
    return {
        "message": "Webhook endpoint is active and ready to receive messages",
        "status": "success",
    }


def _parse_button_id(button_id: str) -> tuple[str, str]:
    action, _, order_id = (button_id or "").partition("_")
    return action.lower(), order_id


@router.post("/gupshup-reply")
async def gupshup_reply(request: Request, db=Depends(get_db)):
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid payload format")

    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid payload format")

    sender = body.get("sender") or {}
    message = body.get("payload")
    if not body.get("app") or not body.get("type") or not message or not sender.get("phone"):
        raise HTTPException(400, "Missing required webhook fields")

    phone = str(sender["phone"]).replace("whatsapp:", "")

    if body["type"] != "interactive" or not isinstance(message, dict) or message.get("type") != "button_reply":
        return {"message": "Webhook received, but no action taken"}

    button_id = (message.get("button_reply") or {}).get("id") or ""
    action, order_id = _parse_button_id(button_id)
    if not order_id:
        raise HTTPException(400, "Invalid button ID format")

    order_oid = parse_object_id(order_id, "order id", status_code=404)
    order = await db.orders.find_one({"_id": order_oid})
    if not order:
        raise HTTPException(404, "Order not found")

    if action not in SELLER_ACTIONS:
        logger.warning("SELLER_REPLY_UNKNOWN_ACTION button=%s", button_id)
        return {"message": "Webhook received, but no action taken"}

    seller = await find_replying_seller(db, order, phone)
    if not seller:
        logger.warning("SELLER_REPLY_FORBIDDEN order=%s phone=%s", order.get("order_number"), phone)
        raise HTTPException(403, "Sender is not a seller of this order")

    try:
        updated = await handle_seller_reply(db, order, action, seller)
    except InvalidTransition:
        updated = None

    if updated is None:
        logger.info("SELLER_REPLY_DUPLICATE order=%s action=%s", order.get("order_number"), action)
        return {"message": "Order already processed", "status": "already_processed"}

    return {
        "message": "Webhook processed successfully",
        "order_id": str(updated["_id"]),
        "status": updated["status"],
    }
