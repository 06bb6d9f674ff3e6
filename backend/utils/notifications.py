import asyncio
import logging

from config.env import (
    ADMIN_NOTIFICATION_PHONE,
    GUPSHUP_TEMPLATE_ID,
    GUPSHUP_TEMPLATE_SELLER_NEW_ORDER,
    GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT,
    GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING,
    GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED,
)
from config.constants import OTP_EXPIRY_MINUTES
from utils.whatsapp import GupshupError, send_template_message

logger = logging.getLogger(__name__)


# ==============================
# Formatting
# ==============================

def format_amount(value) -> str:
    return f"Rs. {float(value or 0):,.2f}"


def format_address(address: dict | None) -> str:
    if not address:
        return "Address not available"

    city_line = " ".join(
        part for part in [
            ", ".join(p for p in [address.get("city"), address.get("state")] if p),
            address.get("pincode") or "",
        ] if part
    )

    parts = [
        address.get("name"),
        address.get("line1"),
        address.get("line2"),
        city_line,
        address.get("country") or "India",
    ]
    return ", ".join(p for p in parts if p)


def format_items(items: list[dict]) -> str:
    lines = []
    for item in items:
        details = []
        if item.get("size"):
            details.append(f"Size: {item['size']}")
        if item.get("color"):
            details.append(f"Color: {item['color']}")

        label = item.get("product_name") or "Item"
        if details:
            label += f" ({', '.join(details)})"
        lines.append(f"{label} x{item.get('quantity', 1)} - {format_amount(item.get('price'))}")
    return "; ".join(lines)


def seller_reply_ids(order_id) -> list[str]:
    return [f"accept_{order_id}", f"reject_{order_id}"]


async def _send(template_id: str, phone: str, params: list, **kwargs) -> dict:
    return await asyncio.to_thread(
        send_template_message, template_id, phone, params, **kwargs
    )


# ==============================
# Seller
# ==============================

async def notify_seller_new_order(order: dict, items: list[dict], seller_phone: str) -> bool:
    """
    New-order message with accept/reject buttons.

    The image template is tried first; the text template is the fallback.
    Returns False when neither could be delivered.
    """
    params = [
        order.get("order_number"),
        format_items(items),
        format_address(order.get("shipping_address")),
    ]
    buttons = seller_reply_ids(order["_id"])
    image_url = next((i.get("image_url") for i in items if i.get("image_url")), None)

    if image_url:
        try:
            await _send(
                GUPSHUP_TEMPLATE_SELLER_NEW_ORDER,
                seller_phone,
                params,
                image_url=image_url,
                postback_texts=buttons,
            )
            return True
        except Exception as e:
            logger.warning(
                "SELLER_IMAGE_NOTIFICATION_FAILED order=%s error=%s",
                order.get("order_number"), e,
            )

    try:
        await _send(
            GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT,
            seller_phone,
            params,
            postback_texts=buttons,
        )
        return True
    except GupshupError:
        logger.exception("SELLER_NOTIFICATION_FAILED order=%s", order.get("order_number"))
        return False


# ==============================
# Admin
# ==============================

async def notify_admin_order_update(order: dict, customer: dict | None, status: str) -> bool:
    if not ADMIN_NOTIFICATION_PHONE:
        logger.warning("ADMIN_NOTIFICATION_SKIPPED order=%s reason=no_admin_phone", order.get("order_number"))
        return False

    customer = customer or {}
    address = order.get("shipping_address") or {}
    params = [
        order.get("order_number"),
        format_amount(order.get("total_amount")),
        customer.get("name") or address.get("name") or "Customer",
        customer.get("phone") or address.get("phone") or "N/A",
        format_address(address),
        status,
    ]

    try:
        await _send(GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING, ADMIN_NOTIFICATION_PHONE, params)
        return True
    except GupshupError:
        logger.exception("ADMIN_NOTIFICATION_FAILED order=%s status=%s", order.get("order_number"), status)
        return False


# ==============================
# Customer
# ==============================

async def notify_customer_order_cancelled(order: dict, customer: dict | None, reason: str) -> bool:
    customer = customer or {}
    address = order.get("shipping_address") or {}
    phone = customer.get("phone") or address.get("phone")
    if not phone:
        logger.warning("CUSTOMER_NOTIFICATION_SKIPPED order=%s reason=no_phone", order.get("order_number"))
        return False

    params = [
        customer.get("name") or address.get("name") or "Customer",
        order.get("order_number"),
        reason,
        format_amount(order.get("total_amount")),
    ]

    try:
        await _send(GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED, phone, params)
        return True
    except GupshupError:
        logger.exception("CUSTOMER_NOTIFICATION_FAILED order=%s", order.get("order_number"))
        return False


# ==============================
# OTP
# ==============================

async def send_otp_message(phone: str, otp: str) -> dict:
    """Raises GupshupError; the caller decides how a failed send surfaces."""
    return await _send(GUPSHUP_TEMPLATE_ID, phone, [otp, str(OTP_EXPIRY_MINUTES)])
