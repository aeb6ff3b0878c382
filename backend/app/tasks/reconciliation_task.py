import asyncio
import logging
from typing import Optional

from celery import shared_task

from app.core.config import settings
from app.services.ledger_store import get_store
from app.services.reconciliation import previous_day, run_reconciliation

logger = logging.getLogger("malipo.reconciliation")


@shared_task(
    bind=True,
    max_retries=5,
    # Exponential backoff: 60s, 120s, 240s...
    autoretry_for=(Exception,),
    retry_backoff=60,
    retry_jitter=True,
)
def reconcile_date(self, date_str: Optional[str] = None):
    """
    Wrapper to run the async reconciliation in a sync Celery worker.
    """
    try:
        result = asyncio.run(run_reconciliation(date_str, store=get_store(), settings=settings))
    except Exception as exc:
        logger.error(f"Reconciliation for {date_str or 'today'} failed (attempt {self.request.retries + 1}): {exc}")
        raise
    return result["summary"]


@shared_task
def reconcile_previous_day():
    day = previous_day(settings.TIMEZONE)
    logger.info(f"🌙 Scheduling nightly reconciliation for {day}")
    reconcile_date.delay(day)
    return day
