# core/analytics.py
from collections import Counter
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Tuple
import logging

from google.cloud import firestore

logger = logging.getLogger("notipay.analytics")


# -------------------------------
# Upstream status drift counters
# -------------------------------
class StatusDriftMetrics:
    """
    Counts gateway statuses that were coerced to a safe default.
    Keyed by (kind, raw_status) where kind is 'funding' or 'disbursement'.
    """

    def __init__(self):
        self._counts: Counter = Counter()
        self._lock = Lock()

    def record_coercion(self, kind: str, raw_status: str, coerced_to: str):
        with self._lock:
            self._counts[(kind, raw_status)] += 1
        logger.warning(
            f"Gateway {kind} status drift: {raw_status!r} coerced to {coerced_to}"
        )

    def count(self, kind: str, raw_status: str) -> int:
        with self._lock:
            return self._counts[(kind, raw_status)]

    def snapshot(self) -> Dict[Tuple[str, str], int]:
        with self._lock:
            return dict(self._counts)

    def flush(self, db, collection: str = "gateway_metrics"):
        """
        Push accumulated counters to Firestore and reset them.
        Stored as a map: coerced_funding = { 'FAILED': 3 }
        """
        with self._lock:
            pending = dict(self._counts)
            self._counts.clear()
        if not pending:
            return

        update = {"last_updated": datetime.now(timezone.utc)}
        for (kind, raw_status), value in pending.items():
            update.setdefault(f"coerced_{kind}", {})[raw_status or "EMPTY"] = firestore.Increment(value)

        try:
            db.collection(collection).document("status_drift").set(update, merge=True)
            logger.debug(f"Flushed {len(pending)} drift counters")
        except Exception as e:
            logger.error(f"Failed to flush drift counters: {e}")
            with self._lock:
                self._counts.update(pending)
