"""
Order lifecycle state machine.

Every status change of an order goes through ``apply_order_transition``.
The legal moves live in ``ALLOWED_TRANSITIONS`` and nowhere else.
"""

from datetime import datetime
from enum import Enum

from pymongo import ReturnDocument

from models.order import OrderStatus
from utils.order_timeline import record_order_event


class OrderEvent(str, Enum):
    SELLER_ACCEPTED = "SELLER_ACCEPTED"
    ADMIN_ACCEPTED = "ADMIN_ACCEPTED"
    SELLER_REJECTED = "SELLER_REJECTED"
    ADMIN_REJECTED = "ADMIN_REJECTED"
    SELLER_TIMEOUT = "SELLER_TIMEOUT"
    PROCESSING_STARTED = "PROCESSING_STARTED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    RETURN_APPROVED = "RETURN_APPROVED"


EVENT_TARGETS = {
    OrderEvent.SELLER_ACCEPTED: OrderStatus.CONFIRMED,
    OrderEvent.ADMIN_ACCEPTED: OrderStatus.CONFIRMED,
    OrderEvent.SELLER_REJECTED: OrderStatus.CANCELLED,
    OrderEvent.ADMIN_REJECTED: OrderStatus.CANCELLED,
    OrderEvent.SELLER_TIMEOUT: OrderStatus.CANCELLED,
    OrderEvent.PROCESSING_STARTED: OrderStatus.PROCESSING,
    OrderEvent.SHIPPED: OrderStatus.SHIPPED,
    OrderEvent.DELIVERED: OrderStatus.DELIVERED,
    OrderEvent.RETURN_APPROVED: OrderStatus.RETURNED,
}

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

# Admin status updates name a target, not an event
ADMIN_STATUS_EVENTS = {
    OrderStatus.CONFIRMED: OrderEvent.ADMIN_ACCEPTED,
    OrderStatus.CANCELLED: OrderEvent.ADMIN_REJECTED,
    OrderStatus.PROCESSING: OrderEvent.PROCESSING_STARTED,
    OrderStatus.SHIPPED: OrderEvent.SHIPPED,
    OrderStatus.DELIVERED: OrderEvent.DELIVERED,
    OrderStatus.RETURNED: OrderEvent.RETURN_APPROVED,
}


class InvalidTransition(Exception):
    def __init__(self, current, event: OrderEvent):
        self.current = current
        self.event = event
        super().__init__(f"Cannot apply {event.value} to order in status {current}")


def next_status(current, event: OrderEvent) -> OrderStatus:
    try:
        current_status = OrderStatus(current)
    except ValueError:
        raise InvalidTransition(current, event)

    target = EVENT_TARGETS[event]
    if target not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransition(current_status.value, event)
    return target


def append_note(existing: str | None, note: str) -> str:
    return f"{existing}; {note}" if existing else note


async def apply_order_transition(
    db,
    order: dict,
    event: OrderEvent,
    *,
    actor_role: str,
    actor_id=None,
    extra_fields: dict | None = None,
    note: str | None = None,
    now: datetime | None = None,
):
    """
    Move ``order`` along ``event`` with a conditional update.

    Raises InvalidTransition when the move is illegal from the status held
    in ``order``. Returns the updated document, or None when another writer
    changed the status first.
    """
    now = now or datetime.utcnow()
    current = order.get("status")
    target = next_status(current, event)

    fields = {
        "status": target.value,
        "updated_at": now,
    }
    if extra_fields:
        fields.update(extra_fields)
    if note:
        fields["notes"] = append_note(order.get("notes"), note)

    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "status": current},
        {
            "$set": fields,
            "$push": {
                "status_history": {
                    "from": current,
                    "to": target.value,
                    "event": event.value,
                    "actor_role": actor_role,
                    "at": now,
                }
            },
        },
        return_document=ReturnDocument.AFTER,
    )

    if updated is None:
        return None

    await record_order_event(
        db,
        order_id=order["_id"],
        event=f"ORDER_{event.value}",
        actor_role=actor_role,
        actor_id=actor_id,
        metadata={"from": current, "to": target.value, "note": note},
    )

    return updated
