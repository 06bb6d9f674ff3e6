import asyncio
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from database import get_db
from models.order import OrderStatus, ReturnWindowStatus
from models.wallet import EarningType, WithdrawalCreate, WithdrawalStatus
from utils.audit import log_audit
from utils.crypto import protect_bank_details
from utils.earnings import get_available_balance, get_earnings_summary, release_withdrawal_claim
from utils.guards import assert_seller_scope, parse_object_id
from utils.mongo import serialize_doc, serialize_docs
from utils.return_window import (
    group_by_day,
    item_amount,
    paginate_meta,
    projected_release,
    time_remaining,
    transition_date,
    window_progress,
)
from utils.security import get_current_seller

router = APIRouter(
    prefix="/seller",
    tags=["Seller"]
)

RETURN_WINDOW_SORT_FIELDS = {
    "returnWindowEnd": "return_window_end",
    "returnWindowStart": "return_window_start",
    "createdAt": "created_at",
    "price": "price",
}

OPEN_WITHDRAWAL_STATUSES = [
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.PROCESSING.value,
]


def _parse_date(value: str | None, name: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise HTTPException(400, f"Invalid {name}")


# ======================================================
# ORDERS
# ======================================================

@router.get("/orders")
async def seller_orders(
    status: Optional[OrderStatus] = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    assert_seller_scope(seller, seller_id)

    order_ids = await db.order_items.distinct("order_id", {"seller_id": seller["_id"]})

    base_query = {"_id": {"$in": order_ids}}
    query = dict(base_query)
    if status:
        query["status"] = status.value

    orders = await (
        db.orders.find(query)
        .sort("created_at", -1)
        .skip(offset)
        .limit(limit)
        .to_list(None)
    )

    page_ids = [o["_id"] for o in orders]
    items = await db.order_items.find({
        "order_id": {"$in": page_ids},
        "seller_id": seller["_id"],
    }).to_list(None)

    items_by_order = {}
    for item in items:
        items_by_order.setdefault(item["order_id"], []).append(serialize_doc(item))

    statuses = list(OrderStatus)
    counts = await asyncio.gather(
        db.orders.count_documents(query),
        *[
            db.orders.count_documents({**base_query, "status": s.value})
            for s in statuses
        ],
    )
    total, per_status = counts[0], counts[1:]

    return {
        "orders": [
            {
                **serialize_doc(order),
                "items": items_by_order.get(order["_id"], []),
            }
            for order in orders
        ],
        "stats": {
            "total": sum(per_status),
            **{s.value.lower(): c for s, c in zip(statuses, per_status)},
        },
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(orders) < total,
        },
    }


# ======================================================
# EARNINGS
# ======================================================

@router.get("/earnings")
async def seller_earnings(
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    assert_seller_scope(seller, seller_id)

    summary = await get_earnings_summary(db, seller["_id"])
    summary["earnings"] = serialize_docs(summary["earnings"])
    for group in summary["projected_releases"]:
        group["items"] = serialize_docs(group["items"])

    return summary


@router.get("/earnings/return-window")
async def return_window_items(
    status: str = ReturnWindowStatus.ACTIVE.value,
    order_id: Optional[str] = Query(None, alias="orderId"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    sort_by: str = Query("returnWindowEnd", alias="sortBy"),
    sort_dir: str = Query("asc", alias="sortDir"),
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    assert_seller_scope(seller, seller_id)

    query = {"seller_id": seller["_id"]}
    if status.lower() != "all":
        try:
            query["return_window_status"] = ReturnWindowStatus(status.upper()).value
        except ValueError:
            raise HTTPException(400, "Invalid return window status")
    if order_id:
        query["order_id"] = parse_object_id(order_id, "orderId")

    sort_field = RETURN_WINDOW_SORT_FIELDS.get(sort_by, "return_window_end")
    direction = -1 if sort_dir.lower() == "desc" else 1

    items, total = await asyncio.gather(
        db.order_items.find(query)
        .sort(sort_field, direction)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None),
        db.order_items.count_documents(query),
    )

    earnings = await db.seller_earnings.find({
        "order_item_id": {"$in": [i["_id"] for i in items]},
    }).to_list(None)
    earnings_by_item = {}
    for earning in earnings:
        earnings_by_item.setdefault(earning["order_item_id"], []).append(serialize_doc(earning))

    now = datetime.utcnow()
    enriched = []
    for item in items:
        start, end = item.get("return_window_start"), item.get("return_window_end")
        windowed = start is not None and end is not None
        enriched.append({
            **serialize_doc(item),
            "amount": item_amount(item),
            "time_remaining": time_remaining(end, now) if windowed else None,
            "progress": window_progress(start, end, now),
            "projected_release": projected_release(item),
            "earnings": earnings_by_item.get(item["_id"], []),
        })

    return {
        "items": enriched,
        "meta": paginate_meta(total, page, limit),
    }


@router.get("/earnings/return-window-status")
async def return_window_transitions(
    status: Optional[str] = None,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    assert_seller_scope(seller, seller_id)

    closed = [ReturnWindowStatus.COMPLETED.value, ReturnWindowStatus.RETURNED.value]
    requested = (status or "").upper()

    query = {
        "seller_id": seller["_id"],
        "return_window_status": requested if requested in closed else {"$in": closed},
    }

    window_end = {}
    start = _parse_date(start_date, "startDate")
    end = _parse_date(end_date, "endDate")
    if start:
        window_end["$gte"] = start
    if end:
        window_end["$lte"] = end
    if window_end:
        query["return_window_end"] = window_end

    items, total = await asyncio.gather(
        db.order_items.find(query)
        .sort("return_window_end", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None),
        db.order_items.count_documents(query),
    )

    item_ids = [i["_id"] for i in items]
    earnings = await db.seller_earnings.find({
        "order_item_id": {"$in": item_ids},
        "type": EarningType.POST_RETURN_WINDOW.value,
    }).to_list(None)
    earning_by_item = {e["order_item_id"]: e for e in earnings}

    orders = await db.orders.find(
        {"_id": {"$in": list({i["order_id"] for i in items if i.get("order_id")})}},
        {"order_number": 1},
    ).to_list(None)
    order_numbers = {o["_id"]: o.get("order_number") for o in orders}

    transitions = []
    for item in items:
        amount = item_amount(item)
        earning = earning_by_item.get(item["_id"])
        is_completed = item.get("return_window_status") == ReturnWindowStatus.COMPLETED.value
        transitions.append({
            "id": str(item["_id"]),
            "order_id": str(item.get("order_id")) if item.get("order_id") else None,
            "order_number": order_numbers.get(item.get("order_id")),
            "product_name": item.get("product_name") or "Unknown Product",
            "amount": amount,
            "status": item.get("return_window_status"),
            "transition_date": transition_date(item),
            "window_start_date": item.get("return_window_start"),
            "window_end_date": item.get("return_window_end"),
            "credited_amount": amount if is_completed else 0,
            "earning_id": str(earning["_id"]) if earning else None,
            "earning_amount": earning.get("amount") if earning else None,
        })

    return {
        "transitions": transitions,
        "grouped_by_date": group_by_day(transitions, "transition_date", "credited_amount"),
        "meta": paginate_meta(total, page, limit),
    }


# ======================================================
# PAYOUTS
# ======================================================

@router.post("/payouts/withdraw")
async def request_withdrawal(
    data: WithdrawalCreate,
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    seller_id = seller["_id"]

    # one open withdrawal per seller; the flag is cleared when it closes
    claim = await db.sellers.update_one(
        {"_id": seller_id, "withdrawal_in_progress": {"$ne": True}},
        {"$set": {"withdrawal_in_progress": True}},
    )
    if claim.modified_count == 0:
        raise HTTPException(409, "A withdrawal is already in progress")

    try:
        open_request = await db.withdrawals.find_one({
            "seller_id": seller_id,
            "status": {"$in": OPEN_WITHDRAWAL_STATUSES},
        })
        if open_request:
            raise HTTPException(409, "A withdrawal is already in progress")

        amount = round(data.amount, 2)
        available = await get_available_balance(db, seller_id)
        if amount > available:
            raise HTTPException(400, f"Amount exceeds available balance of {available:.2f}")

        now = datetime.utcnow()
        withdrawal = {
            "seller_id": seller_id,
            "amount": amount,
            "status": WithdrawalStatus.PENDING.value,
            "bank_details": protect_bank_details(data.bank_details.model_dump()),
            "transfer_id": None,
            "failure_reason": None,
            "requested_at": now,
            "created_at": now,
            "updated_at": now,
        }
        result = await db.withdrawals.insert_one(withdrawal)
    except Exception:
        await release_withdrawal_claim(db, seller_id)
        raise

    await log_audit(
        db,
        actor_id=seller_id,
        actor_role="seller",
        action="WITHDRAWAL_REQUESTED",
        metadata={"withdrawal_id": str(result.inserted_id), "amount": amount},
    )

    return {
        "message": "Withdrawal requested",
        "withdrawal_id": str(result.inserted_id),
        "amount": amount,
        "status": WithdrawalStatus.PENDING.value,
        "available_balance": round(available - amount, 2),
    }


def _public_withdrawal(row: dict) -> dict:
    row = serialize_doc(row)
    bank = row.get("bank_details") or {}
    row["bank_details"] = {
        "account_holder_name": bank.get("account_holder_name"),
        "account_number_masked": bank.get("account_number_masked"),
        "ifsc_code": bank.get("ifsc_code"),
        "bank_name": bank.get("bank_name"),
    }
    return row


@router.get("/payouts")
async def list_withdrawals(
    seller=Depends(get_current_seller),
    db=Depends(get_db),
):
    rows = await (
        db.withdrawals.find({"seller_id": seller["_id"]})
        .sort("requested_at", -1)
        .to_list(None)
    )

    return {
        "count": len(rows),
        "withdrawals": [_public_withdrawal(r) for r in rows],
        "available_balance": await get_available_balance(db, seller["_id"]),
    }
