import logging
from datetime import timedelta

from notipay.core.config import settings
from notipay.core.errors import NotipayError
from notipay.models.payment_model import ReconcileReport

logger = logging.getLogger("notipay.reconcile")


async def reconcile_pending_intents(orchestrator, older_than: timedelta) -> ReconcileReport:
    """
    Close out payment intents the creation path left open: gateway accepted
    the funding request but the local record may never have been written.
    """
    logger.info("Starting payment intent reconciliation")
    try:
        report = await orchestrator.reconcile_intents(older_than)
    except NotipayError as e:
        logger.exception(f"Reconciliation run aborted: {e}")
        return ReconcileReport()

    if report.repaired or report.failed:
        logger.warning(f"Reconciliation repaired={report.repaired} failed={report.failed}")

    flush = getattr(orchestrator.metrics, "flush", None)
    db = getattr(orchestrator.store, "db", None)
    if flush and db is not None:
        flush(db, settings.METRICS_COLLECTION)
    return report
