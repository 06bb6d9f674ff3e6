import logging
from datetime import datetime, timedelta

from pymongo.errors import DuplicateKeyError

from config.constants import (
    IMMEDIATE_COMMISSION_RATE,
    POST_RETURN_WINDOW_COMMISSION_RATE,
)
from models.order import ReturnWindowStatus
from models.wallet import EarningType, SellerEarning, WithdrawalStatus
from utils.return_window import group_by_day, item_amount

logger = logging.getLogger(__name__)

COMMISSION_RATES = {
    EarningType.IMMEDIATE: IMMEDIATE_COMMISSION_RATE,
    EarningType.POST_RETURN_WINDOW: POST_RETURN_WINDOW_COMMISSION_RATE,
}

STATS_PERIODS = {
    "last_7_days": 7,
    "last_30_days": 30,
    "last_90_days": 90,
    "all_time": None,
}

# Withdrawals that no longer hold the seller's money
RELEASED_WITHDRAWAL_STATUSES = [
    WithdrawalStatus.FAILED.value,
    WithdrawalStatus.CANCELLED.value,
]

# Items claimed for payout whose ledger row may not be written yet
PENDING_EARNING_TYPES = {
    ReturnWindowStatus.NOT_APPLICABLE.value: EarningType.IMMEDIATE,
    ReturnWindowStatus.COMPLETED.value: EarningType.POST_RETURN_WINDOW,
}


# ==============================
# Ledger writes (append-only)
# ==============================

async def credit_item_earning(
    db,
    item: dict,
    earning_type: EarningType,
    *,
    now: datetime | None = None,
) -> dict | None:
    """
    Insert the single earning row of ``earning_type`` for an order item.
    Returns None when the row already exists.
    """
    if not item.get("seller_id"):
        raise ValueError(f"Order item {item['_id']} has no seller")

    earning = SellerEarning(
        seller_id=item["seller_id"],
        order_item_id=item["_id"],
        order_id=item.get("order_id"),
        earning_type=earning_type,
        gross_amount=item_amount(item),
        commission_rate=COMMISSION_RATES[earning_type],
        credited_at=now or datetime.utcnow(),
    )
    doc = earning.to_document()

    try:
        await db.seller_earnings.insert_one(doc)
    except DuplicateKeyError:
        logger.warning("EARNING_ALREADY_CREDITED item=%s type=%s", item["_id"], earning_type.value)
        return None

    return doc


async def settle_item_earning(
    db,
    item: dict,
    earning_type: EarningType,
    *,
    now: datetime | None = None,
) -> dict | None:
    """
    Write the ledger row of an item already claimed for payout, then mark
    the item credited. ``earnings_pending`` stays set until both writes
    land, so a failed run is picked up by :func:`settle_pending_earnings`.
    """
    now = now or datetime.utcnow()
    earning = await credit_item_earning(db, item, earning_type, now=now)
    await db.order_items.update_one(
        {"_id": item["_id"]},
        {
            "$set": {"earnings_credited": True, "earnings_credited_at": now},
            "$unset": {"earnings_pending": ""},
        },
    )
    return earning


async def settle_pending_earnings(db, now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    settled = 0

    items = await db.order_items.find({"earnings_pending": True}).to_list(None)
    for item in items:
        earning_type = PENDING_EARNING_TYPES.get(item.get("return_window_status"))
        if earning_type is None or not item.get("seller_id"):
            logger.error("PENDING_EARNING_UNSETTLEABLE item=%s status=%s", item["_id"], item.get("return_window_status"))
            continue
        try:
            await settle_item_earning(db, item, earning_type, now=now)
            settled += 1
        except Exception:
            logger.exception("PENDING_EARNING_RETRY_FAILED item=%s", item["_id"])

    if settled:
        logger.info("PENDING_EARNINGS_SETTLED count=%s", settled)
    return settled


# ==============================
# Balance (derived only)
# ==============================

async def get_credited_total(db, seller_id) -> float:
    pipeline = [
        {"$match": {"seller_id": seller_id, "credited_to_balance": True}},
        {"$group": {"_id": None, "amount": {"$sum": "$amount"}}},
    ]
    result = await db.seller_earnings.aggregate(pipeline).to_list(1)
    return round(result[0]["amount"], 2) if result else 0.0


async def get_withdrawn_total(db, seller_id) -> float:
    pipeline = [
        {"$match": {
            "seller_id": seller_id,
            "status": {"$nin": RELEASED_WITHDRAWAL_STATUSES},
        }},
        {"$group": {"_id": None, "amount": {"$sum": "$amount"}}},
    ]
    result = await db.withdrawals.aggregate(pipeline).to_list(1)
    return round(result[0]["amount"], 2) if result else 0.0


async def get_available_balance(db, seller_id) -> float:
    credited = await get_credited_total(db, seller_id)
    withdrawn = await get_withdrawn_total(db, seller_id)
    return round(max(credited - withdrawn, 0.0), 2)


async def release_withdrawal_claim(db, seller_id) -> None:
    await db.sellers.update_one({"_id": seller_id}, {"$set": {"withdrawal_in_progress": False}})


# ==============================
# Dashboard summary
# ==============================

async def get_earning_stats(db, seller_id, now: datetime) -> dict:
    stats = {}

    for label, days in STATS_PERIODS.items():
        match = {"seller_id": seller_id}
        if days is not None:
            match["credited_at"] = {"$gte": now - timedelta(days=days)}

        rows = await db.seller_earnings.aggregate([
            {"$match": match},
            {"$group": {
                "_id": "$type",
                "amount": {"$sum": "$amount"},
                "commission": {"$sum": "$commission"},
                "count": {"$sum": 1},
            }},
        ]).to_list(None)
        by_type = {r["_id"]: r for r in rows}

        immediate = by_type.get(EarningType.IMMEDIATE.value, {})
        post_window = by_type.get(EarningType.POST_RETURN_WINDOW.value, {})
        stats[label] = {
            "immediate_total": round(immediate.get("amount", 0), 2),
            "post_return_window_total": round(post_window.get("amount", 0), 2),
            "commission_total": round(immediate.get("commission", 0) + post_window.get("commission", 0), 2),
            "count": immediate.get("count", 0) + post_window.get("count", 0),
        }

    return stats


async def get_earnings_summary(db, seller_id, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()

    ledger = await (
        db.seller_earnings.find({"seller_id": seller_id})
        .sort("created_at", -1)
        .limit(50)
        .to_list(None)
    )

    active_items = await db.order_items.find({
        "seller_id": seller_id,
        "return_window_status": ReturnWindowStatus.ACTIVE.value,
    }).to_list(None)

    pending_gross = round(sum(item_amount(i) for i in active_items), 2)
    pending_net = round(pending_gross * (1 - POST_RETURN_WINDOW_COMMISSION_RATE), 2)

    releases = [
        {
            "order_item_id": i["_id"],
            "release_at": i.get("return_window_end"),
            "net_amount": round(item_amount(i) * (1 - POST_RETURN_WINDOW_COMMISSION_RATE), 2),
        }
        for i in active_items
    ]

    return {
        "earnings": ledger,
        "pending_return_window": {
            "items": len(active_items),
            "gross_amount": pending_gross,
            "net_amount": pending_net,
        },
        "projected_releases": group_by_day(releases, "release_at", "net_amount"),
        "stats": await get_earning_stats(db, seller_id, now),
        "available_balance": await get_available_balance(db, seller_id),
    }
