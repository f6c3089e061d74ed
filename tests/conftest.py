import asyncio
from typing import Optional

import pytest

from notipay.core.errors import NotFoundError, PersistenceError
from notipay.models.payment_model import Payment, PaymentIntent, INTENT_OPEN, utcnow
from notipay.models.user_model import User
from notipay.services.gateway import (
    DisbursementResult,
    FundingResult,
    normalize_disbursement_status,
    normalize_funding_status,
)
from notipay.services.orchestrator import OrchestratorConfig, PaymentOrchestrator
from notipay.services.payment_store import PaymentStore, matches_expected, split_selector
from notipay.services.user_store import UserStore

PAYER_ID = "payer01"
PAYEE_ID = "payee01"
OTHER_ID = "other01"


class InMemoryPaymentStore(PaymentStore):
    """
    Dict-backed store. Each method yields to the loop once before touching
    state, so concurrent callers interleave the way they would against a
    real database, while the check-and-write inside update_status stays atomic.
    """

    def __init__(self):
        self.docs = {}
        self.intents = {}
        self.fail_inserts = False
        self.fail_intents = False
        # update_status raises when a write touches any of these fields
        self.fail_update_fields = set()

    def _match(self, field, value):
        key = "_id" if field == "id" else field
        return [doc for doc in self.docs.values() if doc.get(key) == value]

    def _first(self, field, value) -> Optional[Payment]:
        found = self._match(field, value)
        return Payment(**found[0]) if found else None

    async def insert(self, payment):
        await asyncio.sleep(0)
        if self.fail_inserts:
            raise PersistenceError("store unavailable")
        if payment.id in self.docs:
            raise PersistenceError(f"payment {payment.id} already exists")
        self.docs[payment.id] = payment.to_document()
        return payment

    async def find_by_id(self, payment_id):
        await asyncio.sleep(0)
        return self._first("id", payment_id)

    async def find_by_reference_id(self, reference_id):
        await asyncio.sleep(0)
        return self._first("reference_id", reference_id)

    async def find_by_charge_or_invoice_id(self, gateway_id):
        await asyncio.sleep(0)
        return self._first("charge_id", gateway_id) or self._first("invoice_id", gateway_id)

    async def find_by_disbursement_id(self, disbursement_id):
        await asyncio.sleep(0)
        return self._first("disbursement_id", disbursement_id)

    async def update_status(self, selector, status=None, *, expected=None, extra=None):
        await asyncio.sleep(0)
        field, value = split_selector(selector)
        found = self._match(field, value)
        if not found:
            raise NotFoundError(f"payment not found for {field}={value}")
        if len(found) > 1:
            raise PersistenceError(f"more than one payment with {field}={value}")
        current = found[0]
        if not matches_expected(current, expected):
            return None
        changes = dict(extra or {})
        if status is not None:
            changes["status"] = status
        if self.fail_update_fields & changes.keys():
            raise PersistenceError("store unavailable")
        changes["updated_at"] = utcnow()
        current.update(changes)
        return Payment(**current)

    def _filter(self, docs, statuses, start, end):
        payments = [Payment(**doc) for doc in docs]
        if statuses:
            payments = [p for p in payments if p.status in statuses]
        if start:
            payments = [p for p in payments if p.created_at >= start]
        if end:
            payments = [p for p in payments if p.created_at <= end]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    async def query(self, statuses=None, start=None, end=None):
        await asyncio.sleep(0)
        return self._filter(self.docs.values(), statuses, start, end)

    async def query_for_user(self, user_id, statuses=None, start=None, end=None):
        await asyncio.sleep(0)
        docs = [d for d in self.docs.values() if user_id in (d["payer_id"], d["payee_id"])]
        return self._filter(docs, statuses, start, end)

    async def record_intent(self, intent):
        await asyncio.sleep(0)
        if self.fail_intents:
            raise PersistenceError("store unavailable")
        self.intents[intent.reference_id] = intent.model_dump()

    async def resolve_intent(self, reference_id, state, gateway_id=None):
        await asyncio.sleep(0)
        if self.fail_intents:
            raise PersistenceError("store unavailable")
        intent = self.intents[reference_id]
        intent.update(state=state, updated_at=utcnow())
        if gateway_id:
            intent["gateway_id"] = gateway_id

    async def open_intents(self, created_before):
        await asyncio.sleep(0)
        return [
            PaymentIntent(**i)
            for i in self.intents.values()
            if i["state"] == INTENT_OPEN and i["created_at"] <= created_before
        ]


class InMemoryUserStore(UserStore):
    def __init__(self, users=()):
        self.users = {u.id: u for u in users}

    async def get_user(self, user_id):
        return self.users.get(user_id)


class FakeGateway:
    """Records every call; disbursements take a moment so deliveries overlap."""

    def __init__(self):
        self.charge_calls = []
        self.invoice_calls = []
        self.disbursement_calls = []
        self.status_calls = []
        self.lookup_calls = []
        self.charge_status = "PENDING"
        self.disbursement_status = "PENDING"
        self.remote_status = "PENDING"
        self.charge_error = None
        self.disbursement_error = None
        self.lookup = {}
        self.lookup_error = None
        self.delay = 0.01

    async def create_charge(self, **kwargs):
        self.charge_calls.append(kwargs)
        if self.charge_error:
            raise self.charge_error
        n = len(self.charge_calls)
        return FundingResult(
            gateway_id=f"ewc_{n}",
            status=normalize_funding_status(self.charge_status),
            product="charge",
            checkout_url=f"https://checkout.gateway.test/ewc_{n}",
        )

    async def create_invoice(self, **kwargs):
        self.invoice_calls.append(kwargs)
        if self.charge_error:
            raise self.charge_error
        n = len(self.invoice_calls)
        return FundingResult(
            gateway_id=f"inv_{n}",
            status=normalize_funding_status(self.charge_status),
            product="invoice",
            checkout_url=f"https://checkout.gateway.test/inv_{n}",
        )

    async def create_disbursement(self, **kwargs):
        self.disbursement_calls.append(kwargs)
        await asyncio.sleep(self.delay)
        if self.disbursement_error:
            raise self.disbursement_error
        return DisbursementResult(
            disbursement_id=f"disb_{len(self.disbursement_calls)}",
            status=normalize_disbursement_status(self.disbursement_status),
        )

    async def get_funding_status(self, gateway_id, product="charge"):
        self.status_calls.append((gateway_id, product))
        return normalize_funding_status(self.remote_status)

    async def find_funding_by_reference(self, reference_id, product="charge"):
        self.lookup_calls.append(reference_id)
        if self.lookup_error:
            raise self.lookup_error
        return self.lookup.get(reference_id)


@pytest.fixture
def users():
    return InMemoryUserStore([
        User(_id=PAYER_ID, full_name="Juan Dela Cruz", email="juan@notipay.ph", wallet_number="09171234567"),
        User(_id=PAYEE_ID, full_name="Maria Santos", email="maria@notipay.ph", wallet_number="09181234567"),
        User(_id=OTHER_ID, full_name="Pedro Reyes", email="pedro@notipay.ph", wallet_number="09191234567"),
        User(_id="badwallet", full_name="Bad Wallet", email="bad@notipay.ph", wallet_number="12345678901"),
        User(_id="nowallet", full_name="No Wallet", email=None, wallet_number=""),
    ])


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orchestrator(store, users, gateway):
    return PaymentOrchestrator(
        store=store,
        users=users,
        gateway=gateway,
        config=OrchestratorConfig(callback_base_url="https://notipay.test"),
    )


@pytest.fixture
def invoice_orchestrator(store, users, gateway):
    return PaymentOrchestrator(
        store=store,
        users=users,
        gateway=gateway,
        config=OrchestratorConfig(funding_product="invoice", callback_base_url="https://notipay.test"),
    )


@pytest.fixture
async def pending_payment(orchestrator):
    return await orchestrator.create_payment(PAYER_ID, PAYEE_ID, 500.0, "Rent share", "October rent")
