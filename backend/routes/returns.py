from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException

from database import get_db
from models.order import (
    OrderStatus,
    ReturnRequestCreate,
    ReturnRequestStatus,
    ReturnWindowStatus,
)
from utils.guards import parse_object_id
from utils.order_timeline import record_order_event
from utils.return_window import item_amount
from utils.security import get_current_user

router = APIRouter(prefix="/returns", tags=["Returns"])

OPEN_RETURN_STATUSES = [
    ReturnRequestStatus.PENDING.value,
    ReturnRequestStatus.APPROVED.value,
]


@router.post("")
async def create_return_request(
    data: ReturnRequestCreate,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    order_oid = parse_object_id(data.order_id, "order_id")
    item_oid = parse_object_id(data.order_item_id, "order_item_id")

    order = await db.orders.find_one({"_id": order_oid, "user_id": user["_id"]})
    if not order:
        raise HTTPException(404, "Order not found")

    if order.get("status") != OrderStatus.DELIVERED.value:
        raise HTTPException(400, "Only delivered orders can be returned")

    item = await db.order_items.find_one({"_id": item_oid, "order_id": order_oid})
    if not item:
        raise HTTPException(404, "Order item not found")

    now = datetime.utcnow()
    window_end = item.get("return_window_end")
    if (
        item.get("return_window_status") != ReturnWindowStatus.ACTIVE.value
        or not window_end
        or window_end < now
    ):
        raise HTTPException(400, "Return window is closed for this item")

    existing = await db.return_requests.find_one({
        "order_item_id": item_oid,
        "status": {"$in": OPEN_RETURN_STATUSES},
    })
    if existing:
        raise HTTPException(409, "A return request is already open for this item")

    doc = {
        "order_id": order_oid,
        "order_item_id": item_oid,
        "user_id": user["_id"],
        "seller_id": item.get("seller_id"),
        "reason": data.reason.strip(),
        "amount": item_amount(item),
        "status": ReturnRequestStatus.PENDING.value,
        "admin_notes": None,
        "created_at": now,
        "updated_at": now,
    }
    result = await db.return_requests.insert_one(doc)

    await record_order_event(
        db,
        order_id=order_oid,
        event="RETURN_REQUESTED",
        actor_role="customer",
        actor_id=user["_id"],
        metadata={"order_item_id": str(item_oid), "reason": doc["reason"]},
    )

    return {
        "message": "Return request created",
        "return_id": str(result.inserted_id),
        "status": ReturnRequestStatus.PENDING.value,
        "amount": doc["amount"],
    }
