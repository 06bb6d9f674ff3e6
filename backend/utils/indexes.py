from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from config.constants import OTP_RETENTION_HOURS
from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Users / sellers
    await _create_index_safe(
        db.users,
        [("phone", ASCENDING)],
        name="users_phone_unique_idx",
        unique=True,
        sparse=True,
    )
    await _create_index_safe(
        db.sellers,
        [("phone", ASCENDING)],
        name="sellers_phone_idx",
    )

    # WhatsApp OTP
    await _create_index_safe(
        db.whatsapp_otps,
        [("phone", ASCENDING), ("verified", ASCENDING), ("created_at", DESCENDING)],
        name="whatsapp_otps_phone_lookup_idx",
    )
    await _create_index_safe(
        db.whatsapp_otps,
        [("expires_at", ASCENDING)],
        name="whatsapp_otps_expires_ttl_idx",
        expireAfterSeconds=OTP_RETENTION_HOURS * 60 * 60,
    )

    # Orders
    await _create_index_safe(
        db.orders,
        [("order_number", ASCENDING)],
        name="orders_order_number_unique",
        unique=True,
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("payment_status", ASCENDING), ("seller_response_deadline", ASCENDING)],
        name="orders_timeout_sweep_idx",
    )
    await _create_index_safe(
        db.orders,
        [("user_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_user_created_at_idx",
    )

    # Order items
    await _create_index_safe(
        db.order_items,
        [("order_id", ASCENDING)],
        name="order_items_order_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("seller_id", ASCENDING), ("return_window_status", ASCENDING), ("return_window_end", ASCENDING)],
        name="order_items_seller_window_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("return_window_status", ASCENDING), ("return_window_end", ASCENDING)],
        name="order_items_window_expiry_idx",
    )

    # Earnings ledger
    await _create_index_safe(
        db.seller_earnings,
        [("order_item_id", ASCENDING), ("type", ASCENDING)],
        name="seller_earnings_item_type_unique",
        unique=True,
    )
    await _create_index_safe(
        db.seller_earnings,
        [("seller_id", ASCENDING), ("credited_at", DESCENDING)],
        name="seller_earnings_seller_credited_idx",
    )

    # Withdrawals
    await _create_index_safe(
        db.withdrawals,
        [("seller_id", ASCENDING), ("status", ASCENDING)],
        name="withdrawals_seller_status_idx",
    )

    # Returns
    await _create_index_safe(
        db.return_requests,
        [("order_item_id", ASCENDING), ("status", ASCENDING)],
        name="return_requests_item_status_idx",
    )

    # Refund reconciliation
    await _create_index_safe(
        db.refund_reconciliations,
        [("status", ASCENDING), ("next_attempt_at", ASCENDING)],
        name="refund_reconciliations_due_idx",
    )
    await _create_index_safe(
        db.refund_reconciliations,
        [("order_id", ASCENDING)],
        name="refund_reconciliations_order_idx",
    )

    # Timeline / audit
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )
    await _create_index_safe(
        db.audit_logs,
        [("created_at", ASCENDING)],
        name="audit_logs_created_at_idx",
    )

    # Rate limits
    await _create_index_safe(
        db.rate_limits,
        [("key", ASCENDING), ("bucket", ASCENDING)],
        name="rate_limits_key_bucket_unique",
        unique=True,
    )
    await _create_index_safe(
        db.rate_limits,
        [("created_at", ASCENDING)],
        name="rate_limits_ttl_idx",
        expireAfterSeconds=60 * 60,
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )
