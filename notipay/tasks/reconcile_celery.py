import asyncio
import logging
from datetime import timedelta

from notipay.core.celery_app import celery_app
from notipay.core.config import settings
from notipay.tasks.reconcile import reconcile_pending_intents

logger = logging.getLogger("notipay.reconcile")


@celery_app.task(name="notipay.tasks.reconcile_celery.reconcile_intents_task")
def reconcile_intents_task(older_than_seconds: int = None):
    """
    Wrapper to run the async reconciliation in a sync Celery worker.
    """
    from notipay.services.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(settings)
    older_than = timedelta(seconds=older_than_seconds or settings.RECONCILE_AFTER_SECONDS)
    report = asyncio.run(reconcile_pending_intents(orchestrator, older_than))
    logger.info(f"Reconciliation task finished: {report.model_dump()}")
    return report.model_dump()
