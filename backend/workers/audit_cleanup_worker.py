import asyncio
import logging

from database import get_db
from utils.audit import purge_audit_logs

CHECK_INTERVAL_SECONDS = 60 * 60  # hourly
logger = logging.getLogger(__name__)


async def audit_cleanup_worker():
    db = get_db()

    while True:
        try:
            await purge_audit_logs(db)
        except Exception:
            logger.exception("AUDIT_CLEANUP_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
