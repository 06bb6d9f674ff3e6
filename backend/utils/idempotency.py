"""
Delivery-level dedup for gateway webhooks.

One row per (scope, key). A delivery that reserves the key does the work
and then completes or fails it; redeliveries of a completed key get the
stored response back.
"""

from datetime import datetime, timedelta

from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
RESERVATION_STALE_AFTER = timedelta(minutes=10)

STATUS_RESERVED = "reserved"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

IN_PROGRESS_RESPONSE = {
    "message": "Request already in progress",
    "status": "processing",
}


def _held_by_another_delivery(row: dict, now: datetime) -> bool:
    if row.get("status") != STATUS_RESERVED:
        return False
    reserved_at = row.get("created_at") or now
    return now - reserved_at <= RESERVATION_STALE_AFTER


async def reserve_idempotency_key(*, db, key: str, scope: str):
    """
    Returns None when this delivery owns the key and should do the work,
    the stored response when the key already completed, or
    ``IN_PROGRESS_RESPONSE`` while a fresh reservation is held elsewhere.
    Failed and stale reservations are taken over.
    """
    now = datetime.utcnow()
    selector = {"key": key, "scope": scope}

    row = await db.idempotency_keys.find_one(selector)
    if row:
        if row.get("status") == STATUS_COMPLETED:
            return row.get("response")
        if _held_by_another_delivery(row, now):
            return dict(IN_PROGRESS_RESPONSE)
        await db.idempotency_keys.delete_one({"_id": row["_id"]})

    try:
        await db.idempotency_keys.insert_one({
            **selector,
            "status": STATUS_RESERVED,
            "response": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        winner = await db.idempotency_keys.find_one(selector) or {}
        if winner.get("status") == STATUS_COMPLETED:
            return winner.get("response")
        return dict(IN_PROGRESS_RESPONSE)

    return None


async def complete_idempotency_key(*, db, key: str, scope: str, response: dict):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {"$set": {
            "status": STATUS_COMPLETED,
            "response": response,
            "completed_at": datetime.utcnow(),
        }},
    )


async def fail_idempotency_key(*, db, key: str, scope: str, error: str):
    """The next delivery of this key is processed again."""
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {"$set": {
            "status": STATUS_FAILED,
            "error": error,
            "failed_at": datetime.utcnow(),
        }},
    )
