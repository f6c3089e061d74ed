# services/orchestrator.py
"""
Payment state machine.

    PENDING -> SUCCEEDED | EXPIRED
    SUCCEEDED: disbursement_status None -> PENDING -> SUCCEEDED

Every transition is a conditional write on the expected prior state, so two
overlapping deliveries of the same webhook cannot both move a record or both
start a disbursement.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

from notipay.core.analytics import StatusDriftMetrics
from notipay.core.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    NotipayError,
    PersistenceError,
    UpstreamError,
)
from notipay.models.payment_model import (
    DISBURSEMENT_SUFFIX,
    EXPIRED,
    INTENT_ABANDONED,
    INTENT_RECORDED,
    PAYMENT_STATUSES,
    PENDING,
    SUCCEEDED,
    Payment,
    PaymentIntent,
    ReconcileReport,
    utcnow,
)
from notipay.models.user_model import User
from notipay.services.gateway import (
    FundingResult,
    NormalizedStatus,
    normalize_disbursement_status,
    normalize_funding_status,
)
from notipay.services.webhook_dispatcher import WebhookDispatcher
from notipay.utils.validators import (
    to_international,
    validate_amount,
    validate_object_id,
    validate_required_text,
    validate_wallet_number,
)

logger = logging.getLogger("notipay.payments")

DEFAULT_LIST_STATUSES = (PENDING, SUCCEEDED)


@dataclass(frozen=True)
class OrchestratorConfig:
    funding_product: str = "charge"
    callback_base_url: str = "http://127.0.0.1:8000"
    wallet_country_code: str = "+63"

    @classmethod
    def from_settings(cls, settings) -> "OrchestratorConfig":
        return cls(
            funding_product=settings.GATEWAY_FUNDING_PRODUCT,
            callback_base_url=settings.CALLBACK_BASE_URL.rstrip("/"),
            wallet_country_code=settings.WALLET_COUNTRY_CODE,
        )


def parse_date(value, field: str) -> Optional[datetime]:
    """Accept datetimes or RFC3339 strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidRequestError(f"invalid {field} format: {value!r}")
    if not isinstance(value, datetime):
        raise InvalidRequestError(f"invalid {field} format: {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class PaymentOrchestrator:
    def __init__(
        self,
        store,
        users,
        gateway,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional[StatusDriftMetrics] = None,
    ):
        self.store = store
        self.users = users
        self.gateway = gateway
        self.config = config or OrchestratorConfig()
        self.metrics = metrics or StatusDriftMetrics()
        self.webhooks = WebhookDispatcher(self)

    # ========================================
    # Helpers
    # ========================================
    async def _get_user(self, user_id: str, role: str) -> User:
        user = await self.users.get_user(user_id)
        if user is None:
            logger.info(f"{role.capitalize()} not found for ID {user_id}")
            raise NotFoundError(f"{role} not found")
        return user

    async def _reload(self, payment_id: str) -> Payment:
        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            raise NotFoundError(f"payment {payment_id} not found")
        return payment

    def _callback_urls(self, reference_id: str):
        base = self.config.callback_base_url
        return (
            f"{base}/success?reference_id={reference_id}",
            f"{base}/failure?reference_id={reference_id}",
        )

    async def _close_intent(self, reference_id: str, state: str, gateway_id: Optional[str] = None):
        # Best effort: an intent left OPEN is picked up again by reconciliation.
        try:
            await self.store.resolve_intent(reference_id, state, gateway_id)
        except PersistenceError as e:
            logger.warning(f"Could not mark intent {reference_id} as {state}: {e}")

    @staticmethod
    def _payment_from(intent: PaymentIntent, funding: FundingResult) -> Payment:
        fields = dict(
            id=intent.payment_id,
            reference_id=intent.reference_id,
            payer_id=intent.payer_id,
            payee_id=intent.payee_id,
            amount=intent.amount,
            title=intent.title,
            description=intent.description,
            status=funding.status.value,
            funding_product=funding.product,
        )
        if funding.product == "invoice":
            fields.update(invoice_id=funding.gateway_id, invoice_url=funding.checkout_url)
        else:
            fields.update(charge_id=funding.gateway_id, checkout_url=funding.checkout_url)
        return Payment(**fields)

    # ========================================
    # Create
    # ========================================
    async def create_payment(self, payer_id, payee_id, amount, title, description) -> Payment:
        payer_id = validate_object_id(payer_id, "payer_id")
        payee_id = validate_object_id(payee_id, "payee_id")
        amount = validate_amount(amount)
        title = validate_required_text(title, "title")
        description = validate_required_text(description, "description")
        product = self.config.funding_product

        logger.info(f"Creating payment: payer={payer_id} payee={payee_id} amount={amount} product={product}")

        payer = await self._get_user(payer_id, "payer")
        payee = await self._get_user(payee_id, "payee")
        validate_wallet_number(payee.wallet_number, "payee")
        if product == "invoice":
            if not payer.email or "@" not in payer.email:
                raise InvalidRequestError("payer email missing")
        else:
            validate_wallet_number(payer.wallet_number, "payer")

        intent = PaymentIntent(
            reference_id=uuid4().hex,
            payment_id=uuid4().hex,
            payer_id=payer_id,
            payee_id=payee_id,
            amount=amount,
            title=title,
            description=description,
            funding_product=product,
        )
        await self.store.record_intent(intent)

        success_url, failure_url = self._callback_urls(intent.reference_id)
        try:
            if product == "invoice":
                funding = await self.gateway.create_invoice(
                    reference_id=intent.reference_id,
                    payer_email=payer.email,
                    amount=amount,
                    description=f"{title} - {description}",
                    success_url=success_url,
                    failure_url=failure_url,
                )
            else:
                funding = await self.gateway.create_charge(
                    reference_id=intent.reference_id,
                    mobile_number=to_international(payer.wallet_number, self.config.wallet_country_code),
                    amount=amount,
                    description=description,
                    success_url=success_url,
                    failure_url=failure_url,
                    metadata={"title": title},
                )
        except UpstreamError as e:
            # No status code means the last attempt never got an answer; the
            # gateway may still hold the charge, so the intent stays open.
            if e.status_code is not None:
                await self._close_intent(intent.reference_id, INTENT_ABANDONED)
            raise UpstreamError(
                f"payment creation failed: {e.message}",
                operation=e.operation,
                status_code=e.status_code,
                body=e.body,
                attempts=e.attempts,
            ) from e

        payment = self._payment_from(intent, funding)
        try:
            await self.store.insert(payment)
        except PersistenceError:
            logger.critical(
                f"Gateway accepted {product} {funding.gateway_id} (reference {intent.reference_id}) "
                f"but the payment was not stored; left open for reconciliation"
            )
            raise

        await self._close_intent(intent.reference_id, INTENT_RECORDED, funding.gateway_id)
        logger.info(f"Payment created: ID={payment.id} {product}={funding.gateway_id} status={payment.status}")
        return payment

    # ========================================
    # Reads
    # ========================================
    async def get_payment(self, payment_id) -> Payment:
        payment_id = validate_object_id(payment_id, "payment_id")
        payment = await self.store.find_by_id(payment_id)
        if payment is None:
            logger.info(f"Payment not found for ID {payment_id}")
            raise NotFoundError("payment not found")
        return payment

    def _filters(self, status, start_date, end_date):
        # expired payments only show up when asked for by name
        statuses = DEFAULT_LIST_STATUSES
        if status:
            status = status.strip().upper()
            if status not in PAYMENT_STATUSES:
                raise InvalidRequestError(f"invalid status filter, must be one of {', '.join(PAYMENT_STATUSES)}")
            statuses = (status,)
        start = parse_date(start_date, "start_date")
        end = parse_date(end_date, "end_date")
        if start and end and start > end:
            raise InvalidRequestError("start_date must not be after end_date")
        return statuses, start, end

    async def list_payments(self, status=None, start_date=None, end_date=None) -> List[Payment]:
        statuses, start, end = self._filters(status, start_date, end_date)
        return await self.store.query(statuses, start, end)

    async def list_payments_for_user(self, user_id, status=None, start_date=None, end_date=None) -> List[Payment]:
        user_id = validate_object_id(user_id, "user_id")
        statuses, start, end = self._filters(status, start_date, end_date)
        return await self.store.query_for_user(user_id, statuses, start, end)

    # ========================================
    # Synchronous confirmation (redirect callback)
    # ========================================
    async def confirm_payment(self, payment_id) -> Payment:
        payment_id = validate_object_id(payment_id, "payment_id")
        updated = await self.store.update_status(
            {"id": payment_id}, SUCCEEDED, expected={"status": PENDING}
        )
        if updated is None:
            current = await self._reload(payment_id)
            logger.info(f"Cannot update payment {payment_id} with status {current.status}")
            raise ConflictError(
                f"can only update payment with status PENDING, current status is {current.status}"
            )
        logger.info(f"Payment status updated to SUCCEEDED: ID={payment_id}")
        return updated

    # ========================================
    # Disbursement
    # ========================================
    async def create_disbursement(self, payment_id) -> Payment:
        payment = await self.get_payment(payment_id)
        return await self._disburse(payment)

    async def _disburse(self, payment: Payment) -> Payment:
        if payment.status != SUCCEEDED:
            logger.info(f"Cannot disburse payment {payment.id} with status {payment.status}")
            raise ConflictError(
                f"can only disburse payment with status SUCCEEDED, current status is {payment.status}"
            )
        if payment.disbursement_status is not None:
            raise ConflictError(f"disbursement already {payment.disbursement_status} for payment {payment.id}")

        payee = await self._get_user(payment.payee_id, "payee")
        validate_wallet_number(payee.wallet_number, "payee")

        claimed = await self.store.update_status(
            {"id": payment.id},
            expected={"status": SUCCEEDED, "disbursement_status": None},
            extra={"disbursement_status": PENDING},
        )
        if claimed is None:
            raise ConflictError(f"disbursement already in progress for payment {payment.id}")

        try:
            result = await self.gateway.create_disbursement(
                reference_id=payment.disbursement_reference_id,
                account_number=payee.wallet_number,
                account_holder_name=payee.full_name,
                amount=payment.amount,
                description=payment.title,
            )
        except Exception:
            # a retry reuses the same idempotency key
            await self._release_claim(payment.id)
            raise

        try:
            updated = await self.store.update_status(
                {"id": payment.id},
                extra={"disbursement_id": result.disbursement_id, "disbursement_status": result.status.value},
            )
        except PersistenceError:
            # the claim stays PENDING until the disbursement webhook records the id
            logger.critical(
                f"Disbursement {result.disbursement_id} created for payment {payment.id} "
                f"(reference {payment.disbursement_reference_id}) but not recorded"
            )
            raise

        logger.info(
            f"Disbursement created: ID={result.disbursement_id} PaymentID={payment.id} Status={result.status.value}"
        )
        return updated

    async def _release_claim(self, payment_id: str):
        try:
            await self.store.update_status(
                {"id": payment_id},
                expected={"disbursement_status": PENDING, "disbursement_id": None},
                extra={"disbursement_status": None},
            )
        except NotipayError as e:
            logger.error(f"Could not release disbursement claim on payment {payment_id}: {e}")

    async def _disburse_if_unclaimed(self, payment: Payment) -> Payment:
        try:
            return await self._disburse(payment)
        except ConflictError as e:
            # another delivery got there first
            logger.info(f"Disbursement for payment {payment.id} skipped: {e}")
            return await self._reload(payment.id)

    # ========================================
    # Webhook-driven transitions
    # ========================================
    async def handle_webhook(self, payload) -> None:
        await self.webhooks.dispatch(payload)

    async def apply_funding_event(self, gateway_id: str, raw_status: str) -> Payment:
        payment = await self.store.find_by_charge_or_invoice_id(gateway_id)
        if payment is None:
            logger.error(f"Payment not found for charge {gateway_id}")
            raise NotFoundError(f"payment not found for charge {gateway_id}")
        status = normalize_funding_status(raw_status, self.metrics)
        return await self._apply_funding_status(payment, status)

    async def _apply_funding_status(self, payment: Payment, status: NormalizedStatus) -> Payment:
        if status.value == SUCCEEDED:
            updated = await self.store.update_status(
                {"id": payment.id}, SUCCEEDED, expected={"status": PENDING}
            )
            if updated is not None:
                logger.info(f"Updated payment {payment.id} to SUCCEEDED ({status.raw})")
                return await self._disburse_if_unclaimed(updated)

            current = await self._reload(payment.id)
            if current.status == SUCCEEDED and current.disbursement_status is None:
                logger.info(f"Payment {current.id} already SUCCEEDED without disbursement, resuming")
                return await self._disburse_if_unclaimed(current)
            logger.info(f"Duplicate {status.raw} for payment {current.id} in status {current.status}, no action taken")
            return current

        if status.value == EXPIRED:
            updated = await self.store.update_status(
                {"id": payment.id}, EXPIRED, expected={"status": PENDING}
            )
            if updated is None:
                logger.info(f"Expiry for payment {payment.id} ignored, status is no longer PENDING")
                return await self._reload(payment.id)
            logger.info(f"Payment {payment.id} EXPIRED")
            return updated

        # Log unexpected status but do not update
        logger.info(f"Received status {status.raw or 'EMPTY'} for payment {payment.id}, no action taken")
        return payment

    async def _adopt_disbursement(self, disbursement_id: str, reference_id: Optional[str]) -> Optional[Payment]:
        """
        Attach a disbursement id the gateway knows about but the record lost:
        the claim was written, the gateway accepted, the id write failed.
        """
        if not reference_id or not reference_id.endswith(DISBURSEMENT_SUFFIX):
            return None
        payment = await self.store.find_by_reference_id(reference_id[: -len(DISBURSEMENT_SUFFIX)])
        if payment is None:
            return None
        if payment.disbursement_status != PENDING or payment.disbursement_id is not None:
            logger.error(
                f"Disbursement {disbursement_id} names payment {payment.id}, which holds "
                f"disbursement {payment.disbursement_id} ({payment.disbursement_status})"
            )
            return None

        adopted = await self.store.update_status(
            {"id": payment.id},
            expected={"disbursement_status": PENDING, "disbursement_id": None},
            extra={"disbursement_id": disbursement_id},
        )
        if adopted is None:
            current = await self._reload(payment.id)
            return current if current.disbursement_id == disbursement_id else None
        logger.warning(f"Recorded missing disbursement {disbursement_id} on payment {payment.id}")
        return adopted

    async def apply_disbursement_event(
        self, disbursement_id: str, raw_status: str, reference_id: Optional[str] = None
    ) -> Payment:
        payment = await self.store.find_by_disbursement_id(disbursement_id)
        if payment is None:
            payment = await self._adopt_disbursement(disbursement_id, reference_id)
        if payment is None:
            logger.error(f"Payment not found for disbursement {disbursement_id}")
            raise NotFoundError(f"payment not found for disbursement {disbursement_id}")

        status = normalize_disbursement_status(raw_status, self.metrics)
        if status.value != SUCCEEDED:
            logger.info(f"Disbursement {disbursement_id} still {status.value}")
            return payment

        updated = await self.store.update_status(
            {"disbursement_id": disbursement_id},
            expected={"disbursement_status": PENDING},
            extra={"disbursement_status": SUCCEEDED},
        )
        if updated is None:
            logger.info(f"Disbursement {disbursement_id} already {payment.disbursement_status}, no action taken")
            return payment
        logger.info(f"Updated payment {payment.id} disbursement {disbursement_id} to SUCCEEDED")
        return updated

    # ========================================
    # Status poll
    # ========================================
    async def refresh_payment_status(self, payment_id) -> Payment:
        payment = await self.get_payment(payment_id)
        if payment.status != PENDING:
            return payment
        status = await self.gateway.get_funding_status(payment.gateway_id, payment.funding_product)
        return await self._apply_funding_status(payment, status)

    # ========================================
    # Write-ahead intent reconciliation
    # ========================================
    async def reconcile_intents(self, older_than: timedelta = timedelta(minutes=15)) -> ReconcileReport:
        report = ReconcileReport()
        cutoff = utcnow() - older_than
        intents = await self.store.open_intents(cutoff)
        logger.info(f"Reconciling {len(intents)} open payment intents older than {cutoff.isoformat()}")

        for intent in intents:
            try:
                outcome = await self._reconcile_intent(intent)
            except NotipayError as e:
                report.failed += 1
                logger.error(f"Reconciliation failed for intent {intent.reference_id}: {e}")
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(f"Reconciliation done: {report.model_dump()}")
        return report

    async def _reconcile_intent(self, intent: PaymentIntent) -> str:
        existing = await self.store.find_by_reference_id(intent.reference_id)
        if existing is not None:
            await self.store.resolve_intent(intent.reference_id, INTENT_RECORDED, existing.gateway_id)
            return "recorded"

        funding = await self.gateway.find_funding_by_reference(intent.reference_id, intent.funding_product)
        if funding is None:
            await self.store.resolve_intent(intent.reference_id, INTENT_ABANDONED)
            return "abandoned"

        payment = self._payment_from(intent, funding)
        payment.created_at = intent.created_at
        await self.store.insert(payment)
        await self.store.resolve_intent(intent.reference_id, INTENT_RECORDED, funding.gateway_id)
        logger.warning(
            f"Repaired missing payment {payment.id} for {funding.product} {funding.gateway_id} "
            f"(reference {intent.reference_id})"
        )
        return "repaired"


def build_orchestrator(settings) -> PaymentOrchestrator:
    """Production wiring: Firestore stores + HTTP gateway client."""
    from notipay.core.firebase import get_db
    from notipay.services.gateway import GatewayClient, GatewayConfig
    from notipay.services.payment_store import FirestorePaymentStore
    from notipay.services.user_store import FirestoreUserStore

    db = get_db()
    metrics = StatusDriftMetrics()
    return PaymentOrchestrator(
        store=FirestorePaymentStore(
            db,
            collection=settings.PAYMENTS_COLLECTION,
            intents_collection=settings.INTENTS_COLLECTION,
            timeout=settings.STORE_TIMEOUT_SECONDS,
        ),
        users=FirestoreUserStore(db, collection=settings.USERS_COLLECTION, timeout=settings.STORE_TIMEOUT_SECONDS),
        gateway=GatewayClient(GatewayConfig.from_settings(settings), metrics=metrics),
        config=OrchestratorConfig.from_settings(settings),
        metrics=metrics,
    )
