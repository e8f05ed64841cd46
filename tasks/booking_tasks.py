"""
tasks/booking_tasks.py
Celery tasks for time-based booking housekeeping.
"""

import logging

from tasks.celery_app import celery_app
from tasks.notification_tasks import run_async

logger = logging.getLogger(__name__)


@celery_app.task
def expire_booking_modifications():
    """
    Beat task: runs hourly.
    Lapses reschedule / rebook requests nobody answered before expires_at.
    """
    from config.database import get_db_context
    from services.booking.modifications import expire_stale

    async def _run():
        async with get_db_context() as db:
            return await expire_stale(db)

    expired = run_async(_run)
    if expired:
        logger.info(f"Expired {expired} booking modification request(s)")
    return expired
