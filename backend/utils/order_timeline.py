from datetime import datetime

from bson import ObjectId


def _as_object_id(value):
    return value if isinstance(value, ObjectId) else ObjectId(value)


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
):
    """Append one event to the order's audit trail. Rows are never updated."""
    await db.order_timeline.insert_one({
        "order_id": _as_object_id(order_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": str(actor_id) if actor_id else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    })


async def get_order_timeline(db, order_id) -> list[dict]:
    return await (
        db.order_timeline.find({"order_id": _as_object_id(order_id)})
        .sort("created_at", 1)
        .to_list(None)
    )
