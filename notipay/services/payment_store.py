# services/payment_store.py
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from notipay.core.errors import NotFoundError, PersistenceError
from notipay.models.payment_model import Payment, PaymentIntent, INTENT_OPEN, utcnow
from notipay.utils.firebase import firestore_run

logger = logging.getLogger("notipay.store")

SELECTOR_FIELDS = ("id", "reference_id", "charge_id", "invoice_id", "disbursement_id")


def split_selector(selector: dict):
    if len(selector) != 1:
        raise ValueError(f"selector must name exactly one field, got {selector!r}")
    field, value = next(iter(selector.items()))
    if field not in SELECTOR_FIELDS:
        raise ValueError(f"unsupported selector field: {field}")
    return field, value


def matches_expected(current: dict, expected: Optional[dict]) -> bool:
    if not expected:
        return True
    return all(current.get(field) == value for field, value in expected.items())


class PaymentStore(ABC):
    """Persistence contract for Payment records and their write-ahead intents. No deletes."""

    @abstractmethod
    async def insert(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def find_by_id(self, payment_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def find_by_reference_id(self, reference_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def find_by_charge_or_invoice_id(self, gateway_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def find_by_disbursement_id(self, disbursement_id: str) -> Optional[Payment]: ...

    @abstractmethod
    async def update_status(
        self,
        selector: dict,
        status: Optional[str] = None,
        *,
        expected: Optional[dict] = None,
        extra: Optional[dict] = None,
    ) -> Optional[Payment]:
        """
        Conditional write on the single record matched by ``selector``.

        Raises NotFoundError when nothing matches and PersistenceError when
        more than one record does. Returns None, without writing, when any
        ``expected`` field differs from the stored value.
        """

    @abstractmethod
    async def query(
        self,
        statuses: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Payment]:
        """Newest first. ``statuses`` None means every status."""

    @abstractmethod
    async def query_for_user(
        self,
        user_id: str,
        statuses: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Payment]: ...

    # ---------------- write-ahead intents ----------------
    @abstractmethod
    async def record_intent(self, intent: PaymentIntent) -> None: ...

    @abstractmethod
    async def resolve_intent(self, reference_id: str, state: str, gateway_id: Optional[str] = None) -> None: ...

    @abstractmethod
    async def open_intents(self, created_before: datetime) -> List[PaymentIntent]: ...


class FirestorePaymentStore(PaymentStore):
    def __init__(self, db, collection: str = "payments", intents_collection: str = "payment_intents", timeout: float = 5.0):
        self.db = db
        self.collection = collection
        self.intents_collection = intents_collection
        self.timeout = timeout

    # ---------------- helpers ----------------
    def _payments(self):
        return self.db.collection(self.collection)

    def _where(self, field: str, value):
        return self._payments().where(filter=FieldFilter(field, "==", value))

    async def _first(self, field: str, value) -> Optional[Payment]:
        docs = await firestore_run(lambda: list(self._where(field, value).limit(2).stream(timeout=self.timeout)))
        if not docs:
            return None
        if len(docs) > 1:
            raise PersistenceError(f"more than one payment with {field}={value}")
        return Payment(**docs[0].to_dict())

    # ---------------- payments ----------------
    async def insert(self, payment: Payment) -> Payment:
        ref = self._payments().document(payment.id)
        # create() fails if the document already exists
        await firestore_run(ref.create, payment.to_document(), timeout=self.timeout)
        logger.info(f"Payment stored: id={payment.id} reference={payment.reference_id}")
        return payment

    async def find_by_id(self, payment_id: str) -> Optional[Payment]:
        doc = await firestore_run(self._payments().document(payment_id).get, timeout=self.timeout)
        return Payment(**doc.to_dict()) if doc.exists else None

    async def find_by_reference_id(self, reference_id: str) -> Optional[Payment]:
        return await self._first("reference_id", reference_id)

    async def find_by_charge_or_invoice_id(self, gateway_id: str) -> Optional[Payment]:
        payment = await self._first("charge_id", gateway_id)
        if payment is None:
            payment = await self._first("invoice_id", gateway_id)
        return payment

    async def find_by_disbursement_id(self, disbursement_id: str) -> Optional[Payment]:
        return await self._first("disbursement_id", disbursement_id)

    def _update_in_transaction(self, field, value, changes: dict, expected: Optional[dict]):
        transaction = self.db.transaction()

        @firestore.transactional
        def run(transaction):
            if field == "id":
                snap = self._payments().document(value).get(transaction=transaction)
                snaps = [snap] if snap.exists else []
            else:
                snaps = list(self._where(field, value).limit(2).stream(transaction=transaction))

            if not snaps:
                raise NotFoundError(f"payment not found for {field}={value}")
            if len(snaps) > 1:
                raise PersistenceError(f"more than one payment with {field}={value}")

            current = snaps[0].to_dict()
            if not matches_expected(current, expected):
                return None

            transaction.update(snaps[0].reference, changes)
            current.update(changes)
            return current

        return run(transaction)

    async def update_status(self, selector, status=None, *, expected=None, extra=None):
        field, value = split_selector(selector)
        changes = dict(extra or {})
        if status is not None:
            changes["status"] = status
        changes["updated_at"] = utcnow()

        updated = await firestore_run(self._update_in_transaction, field, value, changes, expected)
        return Payment(**updated) if updated is not None else None

    def _apply_filters(self, query, statuses, start, end):
        if statuses:
            statuses = list(statuses)
            if len(statuses) == 1:
                query = query.where(filter=FieldFilter("status", "==", statuses[0]))
            else:
                query = query.where(filter=FieldFilter("status", "in", statuses))
        if start:
            query = query.where(filter=FieldFilter("created_at", ">=", start))
        if end:
            query = query.where(filter=FieldFilter("created_at", "<=", end))
        return query.order_by("created_at", direction=firestore.Query.DESCENDING)

    async def query(self, statuses=None, start=None, end=None) -> List[Payment]:
        query = self._apply_filters(self._payments(), statuses, start, end)
        docs = await firestore_run(lambda: list(query.stream(timeout=self.timeout)))
        return [Payment(**doc.to_dict()) for doc in docs]

    async def query_for_user(self, user_id, statuses=None, start=None, end=None) -> List[Payment]:
        found = {}
        for field in ("payer_id", "payee_id"):
            query = self._apply_filters(self._where(field, user_id), statuses, start, end)
            docs = await firestore_run(lambda: list(query.stream(timeout=self.timeout)))
            for doc in docs:
                payment = Payment(**doc.to_dict())
                found[payment.id] = payment
        return sorted(found.values(), key=lambda p: p.created_at, reverse=True)

    # ---------------- write-ahead intents ----------------
    async def record_intent(self, intent: PaymentIntent) -> None:
        ref = self.db.collection(self.intents_collection).document(intent.reference_id)
        await firestore_run(ref.create, intent.model_dump(), timeout=self.timeout)

    async def resolve_intent(self, reference_id, state, gateway_id=None) -> None:
        changes = {"state": state, "updated_at": utcnow()}
        if gateway_id:
            changes["gateway_id"] = gateway_id
        ref = self.db.collection(self.intents_collection).document(reference_id)
        await firestore_run(ref.update, changes, timeout=self.timeout)

    async def open_intents(self, created_before: datetime) -> List[PaymentIntent]:
        query = (
            self.db.collection(self.intents_collection)
            .where(filter=FieldFilter("state", "==", INTENT_OPEN))
            .where(filter=FieldFilter("created_at", "<=", created_before))
        )
        docs = await firestore_run(lambda: list(query.stream(timeout=self.timeout)))
        return [PaymentIntent(**doc.to_dict()) for doc in docs]
