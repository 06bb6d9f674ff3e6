from datetime import datetime, timedelta

import pytest
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from models.wallet import EarningType
from utils.earnings import credit_item_earning, get_available_balance
from utils.order_service import open_return_windows
from workers.return_window_worker import complete_expired_return_windows


@pytest.fixture
def windowed_order(make_seller, make_customer, make_order):
    async def _make(*, end_in, seller=None, price=1000, quantity=1, with_seller=True, order_number="QT-5001"):
        seller = seller or await make_seller()
        customer = await make_customer()
        now = datetime.utcnow()
        order = await make_order(
            customer=customer,
            order_number=order_number,
            status="DELIVERED",
            payment_status="SUCCESSFUL",
            items=[{
                "seller_id": seller["_id"] if with_seller else None,
                "price": price,
                "quantity": quantity,
                "return_window_status": "ACTIVE",
                "return_window_start": now + end_in - timedelta(days=7),
                "return_window_end": now + end_in,
            }],
        )
        return order, seller
    return _make


async def test_elapsed_window_completes_and_credits_net_earning(db, windowed_order):
    order, seller = await windowed_order(end_in=timedelta(hours=-1), price=750, quantity=2)

    result = await complete_expired_return_windows(db)

    assert result["processed"] == 1
    assert result["success_count"] == 1
    assert result["error_count"] == 0
    assert result["results"][0]["amount"] == 1380.0

    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "COMPLETED"
    assert item["earnings_credited"] is True

    [earning] = await db.seller_earnings.find({}).to_list(None)
    assert earning["type"] == "POST_RETURN_WINDOW"
    assert earning["gross_amount"] == 1500.0
    assert earning["commission"] == 120.0
    assert earning["amount"] == 1380.0
    assert earning["seller_id"] == seller["_id"]

    assert await get_available_balance(db, seller["_id"]) == 1380.0


async def test_second_run_credits_nothing(db, windowed_order):
    await windowed_order(end_in=timedelta(hours=-1))

    first = await complete_expired_return_windows(db)
    second = await complete_expired_return_windows(db)

    assert first["success_count"] == 1
    assert second["processed"] == 0
    assert await db.seller_earnings.count_documents({}) == 1


async def test_open_windows_are_untouched(db, windowed_order):
    order, _ = await windowed_order(end_in=timedelta(days=3))

    result = await complete_expired_return_windows(db)

    assert result["processed"] == 0
    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "ACTIVE"


async def test_item_without_seller_is_reported_and_left_active(db, windowed_order):
    order, _ = await windowed_order(end_in=timedelta(hours=-2), with_seller=False)

    result = await complete_expired_return_windows(db)

    assert result["error_count"] == 1
    assert result["success_count"] == 0
    assert result["results"][0]["success"] is False

    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "ACTIVE"
    assert await db.seller_earnings.count_documents({}) == 0


async def test_duplicate_ledger_row_is_refused(db, windowed_order):
    await db.seller_earnings.create_index(
        [("order_item_id", ASCENDING), ("type", ASCENDING)],
        unique=True,
    )
    order, _ = await windowed_order(end_in=timedelta(hours=-1))
    item = await db.order_items.find_one({"order_id": order["_id"]})

    first = await credit_item_earning(db, item, EarningType.POST_RETURN_WINDOW)
    second = await credit_item_earning(db, item, EarningType.POST_RETURN_WINDOW)

    assert first is not None
    assert second is None
    assert await db.seller_earnings.count_documents({}) == 1


async def test_cron_endpoint_runs_the_engine(client, db, windowed_order):
    await windowed_order(end_in=timedelta(hours=-1))

    resp = await client.get("/api/cron/update-return-windows", headers={"x-api-key": "cron-test-key"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1
    assert body["success_count"] == 1


async def _ledger_down(*args, **kwargs):
    raise PyMongoError("write concern not satisfied")


async def test_failed_ledger_write_is_settled_on_next_run(db, monkeypatch, windowed_order):
    order, seller = await windowed_order(end_in=timedelta(hours=-1), price=1000)
    monkeypatch.setattr("utils.earnings.credit_item_earning", _ledger_down)

    first = await complete_expired_return_windows(db)

    assert first["error_count"] == 1
    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "COMPLETED"
    assert item["earnings_pending"] is True
    assert item.get("earnings_credited") is not True
    assert await db.seller_earnings.count_documents({}) == 0

    monkeypatch.setattr("utils.earnings.credit_item_earning", credit_item_earning)
    second = await complete_expired_return_windows(db)

    assert second["retried"] == 1
    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["earnings_credited"] is True
    assert "earnings_pending" not in item
    [earning] = await db.seller_earnings.find({}).to_list(None)
    assert earning["type"] == "POST_RETURN_WINDOW"
    assert await get_available_balance(db, seller["_id"]) == 920.0


async def test_failed_immediate_payout_is_settled_by_worker(db, monkeypatch, make_seller, make_customer, make_order):
    seller = await make_seller()
    customer = await make_customer()
    order = await make_order(
        customer=customer,
        status="DELIVERED",
        payment_status="SUCCESSFUL",
        items=[{"seller_id": seller["_id"], "price": 400, "is_returnable": False}],
    )
    monkeypatch.setattr("utils.earnings.credit_item_earning", _ledger_down)

    opened = await open_return_windows(db, order)

    assert opened["immediate_earnings"] == 0
    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["return_window_status"] == "NOT_APPLICABLE"
    assert item["earnings_pending"] is True

    monkeypatch.setattr("utils.earnings.credit_item_earning", credit_item_earning)
    result = await complete_expired_return_windows(db)

    assert result["retried"] == 1
    [earning] = await db.seller_earnings.find({}).to_list(None)
    assert earning["type"] == "IMMEDIATE"
    assert earning["amount"] == 380.0
