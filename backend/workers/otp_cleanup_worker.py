import asyncio
import logging
from datetime import datetime, timedelta

from database import get_db
from config.constants import OTP_RETENTION_HOURS

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
logger = logging.getLogger(__name__)


async def purge_stale_otps(db, now: datetime | None = None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(hours=OTP_RETENTION_HOURS)

    result = await db.whatsapp_otps.delete_many({
        "$or": [
            {"verified": True, "created_at": {"$lt": cutoff}},
            {"expires_at": {"$lt": cutoff}},
        ]
    })
    return result.deleted_count


async def otp_cleanup_worker():
    db = get_db()

    while True:
        try:
            deleted = await purge_stale_otps(db)
            if deleted:
                logger.info("OTP_CLEANUP deleted=%s", deleted)
        except Exception:
            logger.exception("OTP_CLEANUP_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
