import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("RUN_BACKGROUND_WORKERS", "false")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CASHFREE_API_KEY", "cf-test-app-id")
os.environ.setdefault("CASHFREE_SECRET_KEY", "cf-test-secret")
os.environ.setdefault("GUPSHUP_API_KEY", "gs-test-key")
os.environ.setdefault("GUPSHUP_SOURCE_NUMBER", "919000000001")
os.environ.setdefault("GUPSHUP_API_URL", "https://gupshup.test/wa/api/v1/template/msg")
os.environ.setdefault("GUPSHUP_TEMPLATE_ID", "otp_template")
os.environ.setdefault("ADMIN_NOTIFICATION_PHONE", "+919000000009")
os.environ.setdefault("CRON_API_KEY", "cron-test-key")
os.environ.setdefault("BANK_DATA_ENCRYPTION_KEY", "bank-test-key")

import json
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from config.env import (
    GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING,
    GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED,
    GUPSHUP_TEMPLATE_SELLER_NEW_ORDER,
    GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT,
)
from database import get_db
from utils.cashfree import CashfreeError, compute_webhook_signature
from utils.jwt import create_access_token
from utils.whatsapp import GupshupError


class FakeGateways:
    """Records outbound WhatsApp messages and Cashfree refunds."""

    def __init__(self):
        self.messages = []
        self.refunds = []
        self.failing_templates = set()
        self.refund_error = None

    def send_template_message(self, template_id, phone, params, *, image_url=None, postback_texts=None):
        if template_id in self.failing_templates:
            raise GupshupError(f"template {template_id} rejected")
        self.messages.append({
            "template": template_id,
            "phone": phone,
            "params": list(params),
            "image_url": image_url,
            "postback_texts": postback_texts,
        })
        return {"status": "submitted"}

    def create_refund(self, *, order_number, amount, refund_id, note):
        if self.refund_error:
            raise CashfreeError(self.refund_error)
        self.refunds.append({
            "order_number": order_number,
            "amount": amount,
            "refund_id": refund_id,
            "note": note,
        })
        return {"cf_refund_id": f"cf_{len(self.refunds)}", "refund_status": "PENDING"}

    def sent(self, *templates):
        return [m for m in self.messages if m["template"] in templates]

    @property
    def seller_messages(self):
        return self.sent(GUPSHUP_TEMPLATE_SELLER_NEW_ORDER, GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT)

    @property
    def admin_messages(self):
        return self.sent(GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING)

    @property
    def customer_messages(self):
        return self.sent(GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["quickthreads_test"]


@pytest.fixture
def gateways(monkeypatch):
    fake = FakeGateways()
    monkeypatch.setattr("utils.notifications.send_template_message", fake.send_template_message)
    monkeypatch.setattr("utils.refunds.create_refund", fake.create_refund)
    return fake


@pytest.fixture
async def client(db, gateways):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ======================================================
# FACTORIES
# ======================================================

@pytest.fixture
def make_seller(db):
    async def _make(phone="+919811111111", shop_name="Loom & Thread"):
        result = await db.sellers.insert_one({
            "shop_name": shop_name,
            "phone": phone,
            "created_at": datetime.utcnow(),
        })
        return await db.sellers.find_one({"_id": result.inserted_id})
    return _make


@pytest.fixture
def make_customer(db):
    async def _make(phone="+919822222222", name="Asha Rao", role="customer"):
        result = await db.users.insert_one({
            "name": name,
            "phone": phone,
            "role": role,
            "created_at": datetime.utcnow(),
        })
        return await db.users.find_one({"_id": result.inserted_id})
    return _make


@pytest.fixture
def make_order(db):
    async def _make(
        *,
        customer,
        items,
        order_number="QT-1001",
        status="PENDING",
        payment_status="PENDING",
        **fields,
    ):
        now = datetime.utcnow()
        total = sum(i.get("price", 0) * i.get("quantity", 1) for i in items)
        order = {
            "order_number": order_number,
            "user_id": customer["_id"],
            "status": status,
            "payment_status": payment_status,
            "payment_method": "ONLINE",
            "total_amount": total,
            "shipping_address": {
                "name": customer.get("name"),
                "phone": customer.get("phone"),
                "line1": "12 MG Road",
                "line2": "Indiranagar",
                "city": "Bengaluru",
                "state": "Karnataka",
                "pincode": "560038",
                "country": "India",
            },
            "seller_notified": False,
            "admin_notified": False,
            "customer_notified": False,
            "notes": None,
            "status_history": [],
            "created_at": now,
            "updated_at": now,
        }
        order.update(fields)
        result = await db.orders.insert_one(order)

        for item in items:
            doc = {
                "order_id": result.inserted_id,
                "product_id": item.get("product_id"),
                "seller_id": item.get("seller_id"),
                "product_name": item.get("product_name", "Linen Kurta"),
                "price": item.get("price", 1000),
                "quantity": item.get("quantity", 1),
                "size": item.get("size", "M"),
                "color": item.get("color", "Indigo"),
                "image_url": item.get("image_url"),
                "is_returnable": item.get("is_returnable", True),
                "created_at": now,
            }
            for key in ("return_window_status", "return_window_start", "return_window_end",
                        "earnings_credited", "earnings_credited_at", "returned_at"):
                if key in item:
                    doc[key] = item[key]
            await db.order_items.insert_one(doc)

        return await db.orders.find_one({"_id": result.inserted_id})
    return _make


@pytest.fixture
def paid_order(make_order):
    """An order whose payment succeeded and which waits for the seller."""
    async def _make(*, customer, items, deadline_in=timedelta(minutes=3), **fields):
        now = datetime.utcnow()
        return await make_order(
            customer=customer,
            items=items,
            payment_status="SUCCESSFUL",
            paid_at=now,
            seller_response_deadline=now + deadline_in,
            **fields,
        )
    return _make


# ======================================================
# AUTH / SIGNING HELPERS
# ======================================================

def seller_headers(seller) -> dict:
    token = create_access_token({"sub": str(seller["_id"]), "role": "seller", "sellerId": str(seller["_id"])})
    return {"Authorization": f"Bearer {token}"}


def user_headers(user) -> dict:
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "customer"), "userId": str(user["_id"])})
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(payload: dict, timestamp: str = "1718000000") -> tuple[bytes, dict]:
    raw = json.dumps(payload).encode("utf-8")
    headers = {
        "content-type": "application/json",
        "x-webhook-timestamp": timestamp,
        "x-webhook-signature": compute_webhook_signature(raw_body=raw, timestamp=timestamp),
    }
    return raw, headers


@pytest.fixture
def auth():
    class _Auth:
        seller = staticmethod(seller_headers)
        user = staticmethod(user_headers)
        sign = staticmethod(signed_webhook)
    return _Auth
