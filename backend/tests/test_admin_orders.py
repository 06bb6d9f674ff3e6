from datetime import datetime, timedelta

import pytest

from workers.return_window_worker import complete_expired_return_windows


@pytest.fixture
async def admin(make_customer):
    return await make_customer(phone="+919800000000", name="Ops Admin", role="admin")


async def test_delivery_opens_windows_and_pays_non_returnables(
    client, db, gateways, auth, admin, make_seller, make_customer, make_order,
):
    seller = await make_seller()
    customer = await make_customer()
    order = await make_order(
        customer=customer,
        status="SHIPPED",
        payment_status="SUCCESSFUL",
        items=[
            {"seller_id": seller["_id"], "price": 1000, "product_name": "Silk Saree"},
            {"seller_id": seller["_id"], "price": 400, "product_name": "Innerwear", "is_returnable": False},
        ],
    )
    before = datetime.utcnow()

    resp = await client.patch(
        f"/api/admin/orders/{order['_id']}/status",
        json={"status": "DELIVERED"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "DELIVERED"

    saree = await db.order_items.find_one({"product_name": "Silk Saree"})
    assert saree["return_window_status"] == "ACTIVE"
    window = saree["return_window_end"] - saree["return_window_start"]
    assert window == timedelta(days=7)
    assert saree["return_window_start"] >= before - timedelta(seconds=1)

    innerwear = await db.order_items.find_one({"product_name": "Innerwear"})
    assert innerwear["return_window_status"] == "NOT_APPLICABLE"
    assert innerwear["earnings_credited"] is True

    earnings = await db.seller_earnings.find({"seller_id": seller["_id"]}).to_list(None)
    assert len(earnings) == 1
    assert earnings[0]["type"] == "IMMEDIATE"
    assert earnings[0]["order_item_id"] == innerwear["_id"]
    assert earnings[0]["commission"] == 20.0
    assert earnings[0]["amount"] == 380.0


async def test_illegal_jump_is_409(client, db, auth, admin, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}], payment_status="SUCCESSFUL")

    resp = await client.patch(
        f"/api/admin/orders/{order['_id']}/status",
        json={"status": "SHIPPED"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 409
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "PENDING"


async def test_moving_back_to_pending_is_409(client, auth, admin, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}], status="CONFIRMED")

    resp = await client.patch(
        f"/api/admin/orders/{order['_id']}/status",
        json={"status": "PENDING"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 409


async def test_forward_progression(client, db, auth, admin, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}], status="CONFIRMED")

    for status in ("PROCESSING", "SHIPPED"):
        resp = await client.patch(
            f"/api/admin/orders/{order['_id']}/status",
            json={"status": status},
            headers=auth.user(admin),
        )
        assert resp.status_code == 200

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "SHIPPED"
    assert [h["to"] for h in stored["status_history"]] == ["PROCESSING", "SHIPPED"]

    audit = await db.audit_logs.find({"action": "ORDER_STATUS_UPDATED"}).to_list(None)
    assert len(audit) == 2


async def test_admin_reject_refunds_and_notifies(
    client, db, gateways, auth, admin, make_seller, make_customer, paid_order,
):
    seller = await make_seller()
    customer = await make_customer()
    order = await paid_order(customer=customer, items=[{"seller_id": seller["_id"], "price": 799}])

    resp = await client.post(
        f"/api/admin/orders/{order['_id']}/reject",
        json={"notes": "Item out of stock"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 200
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "CANCELLED"
    assert stored["payment_status"] == "REFUNDED"
    assert "Item out of stock" in stored["notes"]
    assert gateways.refunds[0]["note"] == "Item out of stock"
    assert gateways.customer_messages[0]["params"][2] == "Item out of stock"
    assert gateways.admin_messages[0]["params"][-1] == "ADMIN_REJECTED"


async def test_admin_reject_of_confirmed_order_is_409(
    client, gateways, auth, admin, make_customer, make_order,
):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}], status="CONFIRMED", payment_status="SUCCESSFUL")

    resp = await client.post(
        f"/api/admin/orders/{order['_id']}/reject",
        json={"notes": "Changed mind"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 409
    assert gateways.refunds == []


async def test_admin_accept(client, db, gateways, auth, admin, make_customer, paid_order):
    customer = await make_customer()
    order = await paid_order(customer=customer, items=[{"price": 500}])

    resp = await client.post(f"/api/admin/orders/{order['_id']}/accept", headers=auth.user(admin))

    assert resp.status_code == 200
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "CONFIRMED"
    assert stored["confirmed_at"] is not None


async def test_customers_cannot_use_admin_routes(client, auth, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}])

    resp = await client.post(f"/api/admin/orders/{order['_id']}/accept", headers=auth.user(customer))

    assert resp.status_code == 403


async def test_missing_token_is_401(client, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}])

    resp = await client.post(f"/api/admin/orders/{order['_id']}/accept")

    assert resp.status_code == 401


async def test_item_return_status_override(client, db, auth, admin, make_seller, make_customer, make_order):
    seller = await make_seller()
    customer = await make_customer()
    order = await make_order(
        customer=customer,
        status="DELIVERED",
        items=[{"seller_id": seller["_id"], "price": 500, "return_window_status": "ACTIVE"}],
    )
    item = await db.order_items.find_one({"order_id": order["_id"]})

    resp = await client.patch(
        f"/api/admin/orders/items/{item['_id']}/return-status",
        json={"return_window_status": "completed", "set_earnings_credited": True, "notes": "Manual close"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 200
    stored = await db.order_items.find_one({"_id": item["_id"]})
    assert stored["return_window_status"] == "COMPLETED"
    assert stored["earnings_credited"] is True

    order_after = await db.orders.find_one({"_id": order["_id"]})
    assert "Manual close" in order_after["notes"]


async def test_item_return_status_override_rejects_unknown_status(
    client, db, auth, admin, make_customer, make_order,
):
    customer = await make_customer()
    order = await make_order(customer=customer, status="DELIVERED", items=[{"price": 500}])
    item = await db.order_items.find_one({"order_id": order["_id"]})

    resp = await client.patch(
        f"/api/admin/orders/items/{item['_id']}/return-status",
        json={"return_window_status": "LOST"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 400


async def test_timeline_lists_events_in_order(
    client, gateways, auth, admin, make_seller, make_customer, paid_order,
):
    seller = await make_seller()
    customer = await make_customer()
    order = await paid_order(customer=customer, items=[{"seller_id": seller["_id"], "price": 799}])

    await client.post(
        f"/api/admin/orders/{order['_id']}/reject",
        json={"notes": "Duplicate order"},
        headers=auth.user(admin),
    )
    resp = await client.get(f"/api/admin/orders/{order['_id']}/timeline", headers=auth.user(admin))

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "CANCELLED"
    assert [e["event"] for e in body["events"]] == ["ORDER_ADMIN_REJECTED", "REFUND_SUCCEEDED"]


async def test_returned_status_closes_open_windows_without_payout(
    client, db, gateways, auth, admin, make_seller, make_customer, make_order,
):
    seller = await make_seller()
    customer = await make_customer()
    order = await make_order(
        customer=customer,
        status="SHIPPED",
        payment_status="SUCCESSFUL",
        items=[{"seller_id": seller["_id"], "price": 1000, "product_name": "Silk Saree"}],
    )

    for status in ("DELIVERED", "RETURNED"):
        resp = await client.patch(
            f"/api/admin/orders/{order['_id']}/status",
            json={"status": status},
            headers=auth.user(admin),
        )
        assert resp.status_code == 200

    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "RETURNED"
    assert item["returned_at"] is not None

    result = await complete_expired_return_windows(db, datetime.utcnow() + timedelta(days=8))

    assert result["processed"] == 0
    assert await db.seller_earnings.count_documents({}) == 0
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "RETURNED"


async def test_returned_status_before_delivery_is_409(client, db, auth, admin, make_customer, make_order):
    customer = await make_customer()
    order = await make_order(customer=customer, items=[{"price": 500}], status="SHIPPED")

    resp = await client.patch(
        f"/api/admin/orders/{order['_id']}/status",
        json={"status": "RETURNED"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 409
