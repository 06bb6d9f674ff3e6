from datetime import datetime

import pytest
from bson import ObjectId

from utils.crypto import decrypt_sensitive_value

BANK = {
    "account_holder_name": "Loom and Thread LLP",
    "account_number": "123456789012",
    "ifsc_code": "hdfc0001234",
    "bank_name": "HDFC Bank",
}


@pytest.fixture
async def admin(make_customer):
    return await make_customer(phone="+919800000000", name="Ops Admin", role="admin")


@pytest.fixture
def credit(db):
    async def _credit(seller, amount):
        now = datetime.utcnow()
        await db.seller_earnings.insert_one({
            "seller_id": seller["_id"],
            "order_item_id": ObjectId(),
            "type": "POST_RETURN_WINDOW",
            "gross_amount": amount,
            "commission": 0.0,
            "amount": amount,
            "status": "COMPLETED",
            "credited_to_balance": True,
            "credited_at": now,
            "created_at": now,
        })
    return _credit


async def _withdraw(client, auth, seller, amount):
    return await client.post(
        "/api/seller/payouts/withdraw",
        json={"amount": amount, "bank_details": BANK},
        headers=auth.seller(seller),
    )


async def test_withdrawal_is_held_against_balance(client, db, auth, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 2000.0)

    resp = await _withdraw(client, auth, seller, 1500)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "PENDING"
    assert body["available_balance"] == 500.0

    stored = await db.withdrawals.find_one({"seller_id": seller["_id"]})
    bank = stored["bank_details"]
    assert "account_number" not in bank
    assert bank["account_number_masked"] == "XXXXXXXX9012"
    assert bank["ifsc_code"] == "HDFC0001234"
    assert decrypt_sensitive_value(bank["account_number_encrypted"]) == "123456789012"

    listing = await client.get("/api/seller/payouts", headers=auth.seller(seller))
    assert listing.json()["available_balance"] == 500.0
    listed_bank = listing.json()["withdrawals"][0]["bank_details"]
    assert listed_bank["account_number_masked"] == "XXXXXXXX9012"
    assert "account_number_encrypted" not in listed_bank

    audit = await db.audit_logs.find_one({"action": "WITHDRAWAL_REQUESTED"})
    assert audit["metadata"]["amount"] == 1500.0


async def test_amount_above_balance_is_400(client, auth, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 100.0)

    resp = await _withdraw(client, auth, seller, 100.01)

    assert resp.status_code == 400


async def test_one_open_withdrawal_at_a_time(client, auth, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)

    first = await _withdraw(client, auth, seller, 200)
    second = await _withdraw(client, auth, seller, 200)

    assert first.status_code == 200
    assert second.status_code == 409


async def test_admin_completes_withdrawal(client, db, auth, admin, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)
    withdrawal_id = (await _withdraw(client, auth, seller, 600)).json()["withdrawal_id"]

    processing = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "PROCESSING"},
        headers=auth.user(admin),
    )
    missing_transfer = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "COMPLETED"},
        headers=auth.user(admin),
    )
    completed = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "COMPLETED", "transfer_id": "UTR123456"},
        headers=auth.user(admin),
    )

    assert processing.status_code == 200
    assert missing_transfer.status_code == 400
    assert completed.status_code == 200
    assert completed.json()["withdrawal"]["transfer_id"] == "UTR123456"
    assert "bank_details" not in completed.json()["withdrawal"]

    stored = await db.withdrawals.find_one({"_id": ObjectId(withdrawal_id)})
    assert stored["status"] == "COMPLETED"
    assert stored["completed_at"] is not None

    listing = await client.get("/api/seller/payouts", headers=auth.seller(seller))
    assert listing.json()["available_balance"] == 400.0


async def test_failed_withdrawal_releases_balance(client, auth, admin, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)
    withdrawal_id = (await _withdraw(client, auth, seller, 1000)).json()["withdrawal_id"]

    await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "PROCESSING"},
        headers=auth.user(admin),
    )
    failed = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "FAILED", "failure_reason": "IFSC mismatch"},
        headers=auth.user(admin),
    )

    assert failed.status_code == 200
    listing = await client.get("/api/seller/payouts", headers=auth.seller(seller))
    assert listing.json()["available_balance"] == 1000.0

    retry = await _withdraw(client, auth, seller, 1000)
    assert retry.status_code == 200


async def test_illegal_withdrawal_transition_is_409(client, auth, admin, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)
    withdrawal_id = (await _withdraw(client, auth, seller, 100)).json()["withdrawal_id"]

    resp = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "COMPLETED", "transfer_id": "UTR1"},
        headers=auth.user(admin),
    )

    assert resp.status_code == 409


async def test_request_in_flight_blocks_a_second_one(client, db, auth, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)
    # another request holds the seller's claim but has not inserted yet
    await db.sellers.update_one({"_id": seller["_id"]}, {"$set": {"withdrawal_in_progress": True}})

    resp = await _withdraw(client, auth, seller, 1000)

    assert resp.status_code == 409
    assert await db.withdrawals.count_documents({}) == 0


async def test_rejected_request_releases_the_claim(client, db, auth, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 500.0)

    too_much = await _withdraw(client, auth, seller, 900)
    allowed = await _withdraw(client, auth, seller, 500)

    assert too_much.status_code == 400
    assert allowed.status_code == 200
    stored = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored["withdrawal_in_progress"] is True


async def test_cancelled_withdrawal_frees_the_seller(client, db, auth, admin, make_seller, credit):
    seller = await make_seller()
    await credit(seller, 1000.0)
    withdrawal_id = (await _withdraw(client, auth, seller, 300)).json()["withdrawal_id"]

    cancelled = await client.patch(
        f"/api/admin/withdrawals/{withdrawal_id}",
        json={"status": "CANCELLED"},
        headers=auth.user(admin),
    )

    assert cancelled.status_code == 200
    stored = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored["withdrawal_in_progress"] is False
    assert (await _withdraw(client, auth, seller, 300)).status_code == 200
