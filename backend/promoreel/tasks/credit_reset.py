"""Monthly credit period rollover"""
import asyncio
import logging

from promoreel.core.config import settings
from promoreel.db.session import SessionLocal
from promoreel.services.credit_service import reset_due_users

logger = logging.getLogger(__name__)


async def credit_reset_scheduler_task() -> None:
    """Background task that resets credits for users whose period ended"""
    while True:
        try:
            await asyncio.sleep(settings.CREDIT_RESET_CHECK_INTERVAL)
            db = SessionLocal()
            try:
                reset_count = reset_due_users(db)
                if reset_count:
                    logger.info(f"Reset credits for {reset_count} user(s)")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Error in credit reset scheduler: {e}", exc_info=True)
            await asyncio.sleep(settings.CREDIT_RESET_CHECK_INTERVAL)
