"""
Cancel orders whose seller did not respond in time.

Run every minute from cron:

    python -m scripts.check_order_timeouts
"""

import asyncio
import logging
import sys

from config.env import setup_logging
from database import get_db
from workers.order_timeout_worker import sweep_timed_out_orders

logger = logging.getLogger("scripts.check_order_timeouts")


async def run() -> int:
    cancelled = await sweep_timed_out_orders(get_db())
    logger.info("ORDER_TIMEOUT_CHECK_DONE cancelled=%s", cancelled)
    return cancelled


def main() -> int:
    setup_logging()
    try:
        asyncio.run(run())
    except Exception:
        logger.exception("ORDER_TIMEOUT_CHECK_FAILED")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
