from datetime import datetime
from fastapi import HTTPException


def _window_bucket(now: datetime, window_seconds: int) -> int:
    return int(now.timestamp()) // window_seconds


async def rate_limit(
    db,
    key: str,
    max_requests: int,
    window_seconds: int,
    *,
    now: datetime | None = None,
):
    """
    Fixed-window counter. One row per key per window; old rows are
    removed by the TTL index on ``created_at``.
    """
    now = now or datetime.utcnow()
    bucket = _window_bucket(now, window_seconds)

    record = await db.rate_limits.find_one({"key": key, "bucket": bucket})

    if record and record["count"] >= max(1, max_requests):
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
        )

    await db.rate_limits.update_one(
        {"key": key, "bucket": bucket},
        {
            "$inc": {"count": 1},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
