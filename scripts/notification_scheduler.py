# file: scripts/notification_scheduler.py

import asyncio
import logging
import os
import sys

# Add the project root to the Python path to allow absolute imports from the 'app' package
# This is necessary because we are running this file as a standalone script.
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from app.config import DEADLINE_CHECK_INTERVAL_SECONDS
from app.database.connection import init_db
from app.services.deadline_service import check_deadlines, deadline_checker_loop

logger = logging.getLogger("notification_scheduler")


async def main(run_once: bool = False):
    await init_db()
    if run_once:
        sent = await check_deadlines()
        logger.info(f"Single deadline sweep finished, {sent} reminder(s) sent")
        return
    await deadline_checker_loop(DEADLINE_CHECK_INTERVAL_SECONDS)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting deadline reminder scheduler...")
    asyncio.run(main(run_once="--once" in sys.argv[1:]))
