from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pymongo import ReturnDocument

from config.constants import RETURN_WINDOW_DAYS
from database import get_db
from models.order import (
    AdminOrderReject,
    ItemReturnStatusUpdate,
    OrderStatus,
    OrderStatusUpdate,
    RefundReconciliationStatus,
    RETURN_REQUEST_TRANSITIONS,
    ReturnDecision,
    ReturnRefundCreate,
    ReturnRequestStatus,
    ReturnWindowStatus,
)
from models.wallet import WITHDRAWAL_TRANSITIONS, WithdrawalStatus, WithdrawalUpdate
from utils.audit import log_audit
from utils.earnings import release_withdrawal_claim
from utils.guards import parse_object_id
from utils.mongo import serialize_doc, serialize_docs
from utils.order_service import (
    ADMIN_STATUS_ADMIN_REJECTED,
    accept_order,
    cancel_order,
    mark_delivered,
    mark_item_returned,
    mark_order_returned,
)
from utils.order_state import (
    ADMIN_STATUS_EVENTS,
    InvalidTransition,
    OrderEvent,
    append_note,
    apply_order_transition,
)
from utils.order_timeline import get_order_timeline
from utils.refunds import (
    RETURN_REFUND_PROCESSING,
    RETURN_REFUND_REFUNDED,
    initiate_return_refund,
    is_refundable,
    retry_reconciliation,
)
from utils.security import require_admin

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _load_order(db, order_id: str) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise HTTPException(404, "Order not found")
    return order


def _lost_race():
    return HTTPException(409, "Order was updated by another request, reload and retry")


# ======================================================
# ORDER ACTIONS
# ======================================================

@router.get("/orders/{order_id}/timeline")
async def admin_order_timeline(
    order_id: str,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)
    events = await get_order_timeline(db, order["_id"])

    return {
        "order_number": order.get("order_number"),
        "status": order.get("status"),
        "status_history": order.get("status_history", []),
        "events": serialize_docs(events),
    }


@router.post("/orders/{order_id}/accept")
async def admin_accept_order(
    order_id: str,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)

    try:
        updated = await accept_order(
            db, order, OrderEvent.ADMIN_ACCEPTED,
            actor_role="admin", actor_id=admin["_id"],
        )
    except InvalidTransition as e:
        raise HTTPException(409, str(e))
    if updated is None:
        raise _lost_race()

    await log_audit(db, admin["_id"], "admin", "ORDER_ACCEPTED", {"order_id": order_id})

    return {"message": "Order accepted", "order": serialize_doc(updated)}


@router.post("/orders/{order_id}/reject")
async def admin_reject_order(
    order_id: str,
    data: AdminOrderReject,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)

    try:
        updated = await cancel_order(
            db,
            order,
            OrderEvent.ADMIN_REJECTED,
            reason=data.notes,
            admin_status=ADMIN_STATUS_ADMIN_REJECTED,
            actor_role="admin",
            actor_id=admin["_id"],
        )
    except InvalidTransition as e:
        raise HTTPException(409, str(e))
    if updated is None:
        raise _lost_race()

    await log_audit(db, admin["_id"], "admin", "ORDER_REJECTED", {"order_id": order_id, "notes": data.notes})

    return {"message": "Order rejected", "order": serialize_doc(updated)}


@router.patch("/orders/{order_id}/status")
async def admin_update_order_status(
    order_id: str,
    data: OrderStatusUpdate,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    order = await _load_order(db, order_id)
    target = data.status

    event = ADMIN_STATUS_EVENTS.get(target)
    if event is None:
        raise HTTPException(409, f"Orders cannot be moved to {target.value}")

    try:
        if target == OrderStatus.CANCELLED:
            updated = await cancel_order(
                db,
                order,
                OrderEvent.ADMIN_REJECTED,
                reason="Cancelled by admin",
                admin_status=ADMIN_STATUS_ADMIN_REJECTED,
                actor_role="admin",
                actor_id=admin["_id"],
            )
        elif target == OrderStatus.CONFIRMED:
            updated = await accept_order(db, order, event, actor_role="admin", actor_id=admin["_id"])
        elif target == OrderStatus.DELIVERED:
            updated = await mark_delivered(db, order, actor_role="admin", actor_id=admin["_id"])
        elif target == OrderStatus.RETURNED:
            updated = await mark_order_returned(db, order, actor_role="admin", actor_id=admin["_id"])
        else:
            updated = await apply_order_transition(db, order, event, actor_role="admin", actor_id=admin["_id"])
    except InvalidTransition as e:
        raise HTTPException(409, str(e))

    if updated is None:
        raise _lost_race()

    await log_audit(
        db, admin["_id"], "admin", "ORDER_STATUS_UPDATED",
        {"order_id": order_id, "from": order.get("status"), "to": target.value},
    )

    return {"message": "Order status updated", "order": serialize_doc(updated)}


@router.patch("/orders/items/{item_id}/return-status")
async def admin_update_item_return_status(
    item_id: str,
    data: ItemReturnStatusUpdate,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    try:
        status = ReturnWindowStatus(data.return_window_status.upper())
    except ValueError:
        valid = ", ".join(s.value for s in ReturnWindowStatus)
        raise HTTPException(400, f"Invalid return window status. Must be one of: {valid}")

    item = await db.order_items.find_one({"_id": parse_object_id(item_id, "item_id")})
    if not item:
        raise HTTPException(404, "Order item not found")

    now = datetime.utcnow()
    fields = {"return_window_status": status.value}

    if status == ReturnWindowStatus.RETURNED:
        fields["returned_at"] = now
    if data.set_earnings_credited:
        fields["earnings_credited"] = True
        fields["earnings_credited_at"] = now
    if data.update_return_window:
        days = data.return_window_days or RETURN_WINDOW_DAYS
        fields["return_window_start"] = now
        fields["return_window_end"] = now + timedelta(days=days)

    updated_item = await db.order_items.find_one_and_update(
        {"_id": item["_id"]},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )

    order = await db.orders.find_one({"_id": item.get("order_id")})
    if order:
        note = f"Item {item_id} return window set to {status.value} by admin"
        if data.notes:
            note += f": {data.notes}"
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"notes": append_note(order.get("notes"), note), "updated_at": now}},
        )

    await log_audit(
        db, admin["_id"], "admin", "ITEM_RETURN_STATUS_OVERRIDE",
        {"item_id": item_id, "from": item.get("return_window_status"), "to": status.value},
    )

    return {"message": "Return status updated", "item": serialize_doc(updated_item)}


# ======================================================
# RETURN REQUESTS
# ======================================================

@router.patch("/returns/{return_id}")
async def admin_decide_return(
    return_id: str,
    data: ReturnDecision,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    request_doc = await db.return_requests.find_one({"_id": parse_object_id(return_id, "return_id")})
    if not request_doc:
        raise HTTPException(404, "Return request not found")

    current = ReturnRequestStatus(request_doc["status"])
    if data.status not in RETURN_REQUEST_TRANSITIONS[current]:
        raise HTTPException(409, f"Cannot move return request from {current.value} to {data.status.value}")

    order = await db.orders.find_one({"_id": request_doc["order_id"]})
    item = await db.order_items.find_one({"_id": request_doc["order_item_id"]})
    if not order or not item:
        raise HTTPException(404, "Order or item not found")

    if data.status == ReturnRequestStatus.APPROVED and item.get("return_window_status") != ReturnWindowStatus.ACTIVE.value:
        raise HTTPException(409, "Return window is no longer active for this item")

    now = datetime.utcnow()
    claimed = await db.return_requests.find_one_and_update(
        {"_id": request_doc["_id"], "status": current.value},
        {"$set": {
            "status": data.status.value,
            "admin_notes": data.admin_notes,
            "reviewed_by": admin["_id"],
            "reviewed_at": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise HTTPException(409, "Return request was updated by another request")

    if data.status == ReturnRequestStatus.APPROVED:
        returned = await mark_item_returned(db, order, item, actor_role="admin", actor_id=admin["_id"], now=now)
        if returned is None:
            await db.return_requests.update_one(
                {"_id": request_doc["_id"]},
                {"$set": {"status": current.value, "updated_at": now}},
            )
            raise HTTPException(409, "Return window is no longer active for this item")

    await log_audit(
        db, admin["_id"], "admin", f"RETURN_{data.status.value}",
        {"return_id": return_id, "order_id": str(order["_id"]), "item_id": str(item["_id"])},
    )

    return {"message": "Return request updated", "return": serialize_doc(claimed)}


@router.post("/returns/{return_id}/refund")
async def admin_refund_return(
    return_id: str,
    data: ReturnRefundCreate,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    request_doc = await db.return_requests.find_one({"_id": parse_object_id(return_id, "return_id")})
    if not request_doc:
        raise HTTPException(404, "Return request not found")

    if request_doc.get("status") != ReturnRequestStatus.APPROVED.value:
        raise HTTPException(400, "Return request must be approved before processing a refund")

    order = await db.orders.find_one({"_id": request_doc["order_id"]})
    if not order:
        raise HTTPException(404, "Order not found")
    if not is_refundable(order):
        raise HTTPException(400, "Order was not paid online")

    amount = round(data.refund_amount or float(request_doc.get("amount") or 0), 2)
    if amount <= 0 or amount > float(request_doc.get("amount") or 0):
        raise HTTPException(400, "Refund amount must be positive and no more than the returned amount")

    now = datetime.utcnow()
    claimed = await db.return_requests.find_one_and_update(
        {
            "_id": request_doc["_id"],
            "status": ReturnRequestStatus.APPROVED.value,
            "refund_status": {"$nin": [RETURN_REFUND_PROCESSING, RETURN_REFUND_REFUNDED]},
        },
        {"$set": {"refund_status": RETURN_REFUND_PROCESSING, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise HTTPException(409, "Refund already processed or in progress")

    refunded = await initiate_return_refund(
        db, claimed, order,
        amount=amount,
        note=data.refund_note or "Refund for returned item",
        now=now,
    )

    await log_audit(
        db, admin["_id"], "admin", "RETURN_REFUND",
        {"return_id": return_id, "order_id": str(order["_id"]), "amount": amount, "refunded": refunded},
    )

    if not refunded:
        raise HTTPException(502, "Refund could not be processed, it has been queued for retry")

    refreshed = await db.return_requests.find_one({"_id": request_doc["_id"]})
    return {
        "message": "Refund processed successfully",
        "refund_id": refreshed.get("refund_id"),
        "return": serialize_doc(refreshed),
    }


# ======================================================
# WITHDRAWALS
# ======================================================

@router.patch("/withdrawals/{withdrawal_id}")
async def admin_update_withdrawal(
    withdrawal_id: str,
    data: WithdrawalUpdate,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    withdrawal = await db.withdrawals.find_one({"_id": parse_object_id(withdrawal_id, "withdrawal_id")})
    if not withdrawal:
        raise HTTPException(404, "Withdrawal not found")

    current = WithdrawalStatus(withdrawal["status"])
    if data.status not in WITHDRAWAL_TRANSITIONS[current]:
        raise HTTPException(409, f"Cannot move withdrawal from {current.value} to {data.status.value}")

    if data.status == WithdrawalStatus.COMPLETED and not data.transfer_id:
        raise HTTPException(400, "transfer_id is required to complete a withdrawal")

    now = datetime.utcnow()
    fields = {
        "status": data.status.value,
        "updated_at": now,
        "reviewed_by": admin["_id"],
    }
    if data.transfer_id:
        fields["transfer_id"] = data.transfer_id
    if data.failure_reason:
        fields["failure_reason"] = data.failure_reason
    if data.status == WithdrawalStatus.COMPLETED:
        fields["completed_at"] = now

    updated = await db.withdrawals.find_one_and_update(
        {"_id": withdrawal["_id"], "status": current.value},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(409, "Withdrawal was updated by another request")

    if not WITHDRAWAL_TRANSITIONS[data.status]:
        await release_withdrawal_claim(db, withdrawal["seller_id"])

    await log_audit(
        db, admin["_id"], "admin", f"WITHDRAWAL_{data.status.value}",
        {"withdrawal_id": withdrawal_id, "seller_id": str(withdrawal["seller_id"]), "amount": withdrawal.get("amount")},
    )

    updated.pop("bank_details", None)
    return {"message": "Withdrawal updated", "withdrawal": serialize_doc(updated)}


# ======================================================
# REFUND RECONCILIATION
# ======================================================

@router.get("/refund-reconciliations")
async def list_refund_reconciliations(
    status: Optional[RefundReconciliationStatus] = None,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    query = {}
    if status:
        query["status"] = status.value

    rows = await db.refund_reconciliations.find(query).sort("created_at", -1).limit(100).to_list(None)
    return {"count": len(rows), "items": serialize_docs(rows)}


@router.post("/refund-reconciliations/{item_id}/retry")
async def retry_refund_reconciliation(
    item_id: str,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    item = await db.refund_reconciliations.find_one({"_id": parse_object_id(item_id, "item_id")})
    if not item:
        raise HTTPException(404, "Reconciliation item not found")
    if item.get("status") == RefundReconciliationStatus.RESOLVED.value:
        raise HTTPException(409, "Refund already resolved")

    resolved = await retry_reconciliation(db, item)

    await log_audit(
        db, admin["_id"], "admin", "REFUND_RETRY",
        {"item_id": item_id, "order_id": str(item["order_id"]), "resolved": resolved},
    )

    refreshed = await db.refund_reconciliations.find_one({"_id": item["_id"]})
    return {"resolved": resolved, "item": serialize_doc(refreshed)}
