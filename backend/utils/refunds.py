import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import REFUND_MAX_ATTEMPTS, REFUND_MAX_BACKOFF_MINUTES
from models.order import PaymentStatus, RefundReconciliationStatus, ReturnRequestStatus
from utils.cashfree import create_refund, refund_id_for_order, refund_id_for_return
from utils.order_timeline import record_order_event

logger = logging.getLogger(__name__)

UNRESOLVED = [
    RefundReconciliationStatus.OPEN.value,
    RefundReconciliationStatus.MANUAL_REVIEW.value,
]

RETURN_REFUND_PROCESSING = "PROCESSING"
RETURN_REFUND_FAILED = "FAILED"
RETURN_REFUND_REFUNDED = "REFUNDED"


def refund_backoff(attempts: int) -> timedelta:
    return timedelta(minutes=min(2 ** attempts, REFUND_MAX_BACKOFF_MINUTES))


def is_refundable(order: dict) -> bool:
    if order.get("payment_status") != PaymentStatus.SUCCESSFUL.value:
        return False
    return (order.get("payment_method") or "").upper() != "COD"


def _scope(order: dict, return_request: dict | None = None) -> dict:
    # whole-order refunds carry no return_request_id
    return {
        "order_id": order["_id"],
        "return_request_id": return_request["_id"] if return_request else None,
    }


async def initiate_order_refund(db, order: dict, reason: str, *, now: datetime | None = None) -> bool:
    """
    Refund the full order amount through Cashfree.

    Payment status moves to REFUNDED only after the gateway accepted the
    refund. A failed call leaves the payment SUCCESSFUL and records a
    reconciliation item for the retry worker.
    """
    now = now or datetime.utcnow()

    if not is_refundable(order):
        logger.info(
            "REFUND_SKIPPED order=%s payment_status=%s method=%s",
            order.get("order_number"), order.get("payment_status"), order.get("payment_method"),
        )
        return False

    refund_id = refund_id_for_order(order["_id"])
    amount = float(order.get("total_amount") or 0)

    try:
        gateway_response = await asyncio.to_thread(
            create_refund,
            order_number=order["order_number"],
            amount=amount,
            refund_id=refund_id,
            note=reason,
        )
    except Exception as e:
        await _record_refund_failure(db, order, refund_id, amount, reason, str(e), now)
        logger.error("REFUND_FAILED order=%s error=%s", order.get("order_number"), e)
        return False

    await db.orders.update_one(
        {"_id": order["_id"], "payment_status": PaymentStatus.SUCCESSFUL.value},
        {"$set": {
            "payment_status": PaymentStatus.REFUNDED.value,
            "refund_id": refund_id,
            "refunded_at": now,
            "updated_at": now,
        }},
    )

    await _record_refund_success(
        db, order, refund_id, amount, reason, gateway_response, now,
        transaction_type="REFUND",
    )

    logger.info("REFUND_SUCCEEDED order=%s amount=%s", order.get("order_number"), amount)
    return True


async def initiate_return_refund(
    db,
    return_request: dict,
    order: dict,
    *,
    amount: float,
    note: str,
    now: datetime | None = None,
) -> bool:
    """
    Refund an approved return request through Cashfree.

    The refund id is derived from the return request, so retries reuse
    it. Success moves the request to COMPLETED; a failed call marks its
    refund FAILED and queues a reconciliation item.
    """
    now = now or datetime.utcnow()
    refund_id = refund_id_for_return(return_request["_id"])
    amount = round(float(amount), 2)

    try:
        gateway_response = await asyncio.to_thread(
            create_refund,
            order_number=order["order_number"],
            amount=amount,
            refund_id=refund_id,
            note=note,
        )
    except Exception as e:
        await db.return_requests.update_one(
            {"_id": return_request["_id"]},
            {"$set": {
                "refund_status": RETURN_REFUND_FAILED,
                "refund_error": str(e),
                "updated_at": now,
            }},
        )
        await _record_refund_failure(
            db, order, refund_id, amount, note, str(e), now,
            return_request=return_request,
        )
        logger.error("RETURN_REFUND_FAILED return=%s order=%s error=%s", return_request["_id"], order.get("order_number"), e)
        return False

    await db.return_requests.update_one(
        {"_id": return_request["_id"]},
        {
            "$set": {
                "status": ReturnRequestStatus.COMPLETED.value,
                "refund_status": RETURN_REFUND_REFUNDED,
                "refund_id": refund_id,
                "refunded_amount": amount,
                "refunded_at": now,
                "updated_at": now,
            },
            "$unset": {"refund_error": ""},
        },
    )

    await _record_refund_success(
        db, order, refund_id, amount, note, gateway_response, now,
        transaction_type="RETURN_REFUND",
        return_request=return_request,
    )

    logger.info("RETURN_REFUND_SUCCEEDED return=%s order=%s amount=%s", return_request["_id"], order.get("order_number"), amount)
    return True


async def _record_refund_success(
    db, order, refund_id, amount, reason, gateway_response, now, *, transaction_type, return_request=None,
):
    await db.payment_transactions.insert_one({
        "order_id": order["_id"],
        "order_number": order.get("order_number"),
        "return_request_id": return_request["_id"] if return_request else None,
        "type": transaction_type,
        "amount": amount,
        "status": PaymentStatus.REFUNDED.value,
        "payment_method": order.get("payment_method"),
        "refund_id": refund_id,
        "gateway_refund_id": (gateway_response or {}).get("cf_refund_id"),
        "reason": reason,
        "created_at": now,
    })

    await db.refund_reconciliations.update_many(
        {**_scope(order, return_request), "status": {"$in": UNRESOLVED}},
        {"$set": {
            "status": RefundReconciliationStatus.RESOLVED.value,
            "resolved_at": now,
            "updated_at": now,
        }},
    )

    metadata = {"refund_id": refund_id, "amount": amount}
    if return_request:
        metadata["return_request_id"] = str(return_request["_id"])
    await record_order_event(
        db,
        order_id=order["_id"],
        event="RETURN_REFUNDED" if return_request else "REFUND_SUCCEEDED",
        actor_role="system",
        metadata=metadata,
    )


async def _record_refund_failure(db, order, refund_id, amount, reason, error, now, *, return_request=None):
    scope = _scope(order, return_request)
    existing = await db.refund_reconciliations.find_one({**scope, "status": {"$in": UNRESOLVED}})

    attempts = (existing.get("attempts", 0) if existing else 0) + 1
    status = (
        RefundReconciliationStatus.MANUAL_REVIEW.value
        if attempts >= REFUND_MAX_ATTEMPTS
        else RefundReconciliationStatus.OPEN.value
    )
    fields = {
        "status": status,
        "attempts": attempts,
        "last_error": error,
        "last_attempt_at": now,
        "next_attempt_at": now + refund_backoff(attempts),
        "updated_at": now,
    }

    if existing:
        await db.refund_reconciliations.update_one({"_id": existing["_id"]}, {"$set": fields})
    else:
        await db.refund_reconciliations.insert_one({
            **scope,
            "order_number": order.get("order_number"),
            "refund_id": refund_id,
            "amount": amount,
            "reason": reason,
            "created_at": now,
            **fields,
        })

    await record_order_event(
        db,
        order_id=order["_id"],
        event="REFUND_FAILED",
        actor_role="system",
        metadata={"refund_id": refund_id, "attempts": attempts, "error": error},
    )


async def _resolve(db, item: dict, now: datetime) -> bool:
    await db.refund_reconciliations.update_one(
        {"_id": item["_id"]},
        {"$set": {
            "status": RefundReconciliationStatus.RESOLVED.value,
            "resolved_at": now,
            "updated_at": now,
        }},
    )
    return True


async def retry_reconciliation(db, item: dict, *, now: datetime | None = None) -> bool:
    """Retry one reconciliation item. True when nothing is left to refund."""
    now = now or datetime.utcnow()

    order = await db.orders.find_one({"_id": item["order_id"]})

    if item.get("return_request_id"):
        return_request = await db.return_requests.find_one({"_id": item["return_request_id"]})
        if not order or not return_request or return_request.get("refund_status") == RETURN_REFUND_REFUNDED:
            return await _resolve(db, item, now)
        return await initiate_return_refund(
            db, return_request, order,
            amount=item["amount"],
            note=item.get("reason") or "Refund for returned item",
            now=now,
        )

    if not order or not is_refundable(order):
        return await _resolve(db, item, now)

    return await initiate_order_refund(db, order, item.get("reason") or "Refund retry", now=now)
