#!/usr/bin/env python3
"""
Email Batch Scheduler Task
Dispatches due email batches once and exits
Run this script periodically (e.g., every 15 minutes) via cron when the
HTTP trigger is not used
"""

import sys
import asyncio
from datetime import datetime

from mailer.config import get_settings
from mailer.core.logging_config import configure_logging, get_logger
from mailer.database import SessionLocal, init_db
from mailer.services.campaign_engine import CampaignEngine

logger = get_logger(__name__)


async def run_batch_scheduler():
    """
    Main scheduler function that processes due email batches
    """
    settings = get_settings()
    db = SessionLocal()
    try:
        logger.info("Starting email batch scheduler tick...")

        engine = CampaignEngine(db, settings=settings)
        result = await engine.scheduler.tick()

        if result.processed > 0:
            sent = sum(r.sent for r in result.results)
            logger.info(f"Processed {result.processed} batches, {sent} emails sent")
        else:
            logger.info("No email batches due for processing")
        return result
    finally:
        db.close()


def main():
    """Main entry point for the scheduler"""
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        init_db()
        asyncio.run(run_batch_scheduler())
        print(f"Scheduler completed successfully at {datetime.now()}")

    except Exception as e:
        logger.error(f"Scheduler failed: {e}", exc_info=True)
        print(f"Scheduler failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
