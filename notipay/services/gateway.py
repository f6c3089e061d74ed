# services/gateway.py
"""
Thin client for the payment gateway (Xendit-style e-wallet API).

Every call runs inside a bounded retry loop: at most ``max_attempts`` tries,
each with its own timeout, linear backoff between tries, and an explicit
allow-list of HTTP status codes that count as success. Upstream status words
are normalized here so nothing past this module sees gateway vocabulary.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from notipay.core.analytics import StatusDriftMetrics
from notipay.core.errors import UpstreamError
from notipay.models.payment_model import EXPIRED, PENDING, SUCCEEDED
from notipay.utils.redact import redact_payload

logger = logging.getLogger("notipay.gateway")

CHARGE_OK = (200, 201, 202)
INVOICE_OK = (200, 201)
DISBURSEMENT_OK = (201, 202)
READ_OK = (200,)

BODY_SNIPPET_CHARS = 500

FUNDING_STATUS_MAP = {
    "PENDING": PENDING,
    "SUCCEEDED": SUCCEEDED,
    "PAID": SUCCEEDED,
    "SETTLED": SUCCEEDED,
    "EXPIRED": EXPIRED,
}
DISBURSEMENT_STATUS_MAP = {
    "PENDING": PENDING,
    "SUCCEEDED": SUCCEEDED,
    "COMPLETED": SUCCEEDED,
}


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    secret_key: str
    currency: str = "PHP"
    channel_code: str = "PH_GCASH"
    status_timeout: float = 10.0
    create_timeout: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "GatewayConfig":
        if not settings.GATEWAY_SECRET_KEY:
            raise RuntimeError("GATEWAY_SECRET_KEY is not set")
        return cls(
            base_url=settings.GATEWAY_BASE_URL.rstrip("/"),
            secret_key=settings.GATEWAY_SECRET_KEY,
            currency=settings.GATEWAY_CURRENCY,
            channel_code=settings.GATEWAY_CHANNEL_CODE,
            status_timeout=settings.GATEWAY_STATUS_TIMEOUT_SECONDS,
            create_timeout=settings.GATEWAY_CREATE_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
            backoff_seconds=settings.GATEWAY_BACKOFF_SECONDS,
        )


@dataclass(frozen=True)
class NormalizedStatus:
    value: str
    raw: str
    coerced: bool = False


@dataclass(frozen=True)
class FundingResult:
    gateway_id: str
    status: NormalizedStatus
    product: str = "charge"
    checkout_url: Optional[str] = None


@dataclass(frozen=True)
class DisbursementResult:
    disbursement_id: str
    status: NormalizedStatus


# ----------------------------
# Status normalization
# ----------------------------
def _normalize(raw, table: dict, default: str, kind: str, metrics) -> NormalizedStatus:
    raw_status = str(raw or "").strip().upper()
    value = table.get(raw_status)
    if value is not None:
        return NormalizedStatus(value=value, raw=raw_status)
    if metrics is not None:
        metrics.record_coercion(kind, raw_status, default)
    else:
        logger.warning(f"Gateway {kind} status drift: {raw_status!r} coerced to {default}")
    return NormalizedStatus(value=default, raw=raw_status, coerced=True)


def normalize_funding_status(raw, metrics: Optional[StatusDriftMetrics] = None) -> NormalizedStatus:
    """Unknown charge/invoice statuses stay open as PENDING."""
    return _normalize(raw, FUNDING_STATUS_MAP, PENDING, "funding", metrics)


def normalize_disbursement_status(raw, metrics: Optional[StatusDriftMetrics] = None) -> NormalizedStatus:
    """Unknown disbursement statuses are treated as SUCCEEDED."""
    return _normalize(raw, DISBURSEMENT_STATUS_MAP, SUCCEEDED, "disbursement", metrics)


def pick_checkout_url(actions) -> Optional[str]:
    if not isinstance(actions, dict):
        return None
    return (
        actions.get("mobile_deeplink_checkout_url")
        or actions.get("mobile_web_checkout_url")
        or actions.get("desktop_web_checkout_url")
    )


class GatewayClient:
    def __init__(
        self,
        config: GatewayConfig,
        metrics: Optional[StatusDriftMetrics] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.metrics = metrics or StatusDriftMetrics()
        self._transport = transport
        self._sleep = sleep

    # ----------------------------
    # Retry loop
    # ----------------------------
    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        ok: tuple,
        timeout: float,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        missing_ok: bool = False,
        expect_object: bool = True,
    ) -> Optional[object]:
        if json is not None:
            logger.debug(f"Gateway {operation} request body: {redact_payload(json)}")

        attempts = self.config.max_attempts
        last_status = None
        last_body = ""

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(
                    base_url=self.config.base_url,
                    auth=(self.config.secret_key, ""),
                    timeout=timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.request(
                        method, path, json=json, params=params, headers=headers
                    )
            except httpx.HTTPError as e:
                last_status = None
                last_body = f"{type(e).__name__}: {e}"
                logger.warning(f"Gateway {operation} request failed (attempt {attempt}/{attempts}): {last_body}")
            else:
                if response.status_code in ok:
                    try:
                        data = response.json()
                    except ValueError:
                        pass
                    else:
                        if not expect_object or isinstance(data, dict):
                            return data
                    raise UpstreamError(
                        f"gateway {operation} returned an unexpected body",
                        operation=operation,
                        status_code=response.status_code,
                        body=response.text[:BODY_SNIPPET_CHARS],
                        attempts=attempt,
                    )
                if missing_ok and response.status_code == 404:
                    return None

                last_status = response.status_code
                last_body = response.text[:BODY_SNIPPET_CHARS]
                logger.warning(
                    f"Gateway {operation} failed with status {last_status} "
                    f"(attempt {attempt}/{attempts}): {last_body}"
                )

            if attempt < attempts:
                await self._sleep(self.config.backoff_seconds * attempt)

        logger.error(f"Gateway {operation} failed after {attempts} attempts, status {last_status}: {last_body}")
        raise UpstreamError(
            f"gateway {operation} failed after {attempts} attempts",
            operation=operation,
            status_code=last_status,
            body=last_body,
            attempts=attempts,
        )

    # ----------------------------
    # Funding (payer -> platform)
    # ----------------------------
    async def create_charge(
        self,
        reference_id: str,
        mobile_number: str,
        amount: float,
        description: str,
        success_url: str,
        failure_url: str,
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> FundingResult:
        body = {
            "reference_id": reference_id,
            "currency": currency or self.config.currency,
            "amount": amount,
            "checkout_method": "ONE_TIME_PAYMENT",
            "channel_code": self.config.channel_code,
            "channel_properties": {
                "mobile_number": mobile_number,
                "success_redirect_url": success_url,
                "failure_redirect_url": failure_url,
            },
            "metadata": {"description": description, **(metadata or {})},
        }
        data = await self._request(
            "charge", "POST", "/ewallets/charges",
            ok=CHARGE_OK, timeout=self.config.create_timeout, json=body,
        )

        charge_id = data.get("id")
        if not charge_id:
            raise UpstreamError("gateway charge response has no id", operation="charge", body=str(data)[:BODY_SNIPPET_CHARS])

        checkout_url = pick_checkout_url(data.get("actions"))
        if not checkout_url:
            raise UpstreamError("no valid checkout URL provided in response", operation="charge", body=str(data)[:BODY_SNIPPET_CHARS])

        status = normalize_funding_status(data.get("status"), self.metrics)
        logger.info(f"Charge created: id={charge_id} status={status.value}")
        return FundingResult(gateway_id=charge_id, status=status, product="charge", checkout_url=checkout_url)

    async def create_invoice(
        self,
        reference_id: str,
        payer_email: str,
        amount: float,
        description: str,
        success_url: str,
        failure_url: str,
        currency: Optional[str] = None,
    ) -> FundingResult:
        body = {
            "external_id": reference_id,
            "amount": amount,
            "currency": currency or self.config.currency,
            "description": description,
            "payer_email": payer_email,
            "success_redirect_url": success_url,
            "failure_redirect_url": failure_url,
        }
        data = await self._request(
            "invoice", "POST", "/v2/invoices",
            ok=INVOICE_OK, timeout=self.config.create_timeout, json=body,
        )

        invoice_id = data.get("id")
        if not invoice_id:
            raise UpstreamError("gateway invoice response has no id", operation="invoice", body=str(data)[:BODY_SNIPPET_CHARS])

        status = normalize_funding_status(data.get("status"), self.metrics)
        logger.info(f"Invoice created: id={invoice_id} status={status.value}")
        return FundingResult(
            gateway_id=invoice_id, status=status, product="invoice", checkout_url=data.get("invoice_url")
        )

    async def get_funding_status(self, gateway_id: str, product: str = "charge") -> NormalizedStatus:
        if product == "invoice":
            path, operation = f"/v2/invoices/{gateway_id}", "invoice_status"
        else:
            path, operation = f"/ewallets/charges/{gateway_id}", "charge_status"
        data = await self._request(operation, "GET", path, ok=READ_OK, timeout=self.config.status_timeout)
        return normalize_funding_status(data.get("status"), self.metrics)

    async def find_funding_by_reference(self, reference_id: str, product: str = "charge") -> Optional[FundingResult]:
        """Look a funding record up by our reference id. None when the gateway has none."""
        if product == "invoice":
            path, params = "/v2/invoices", {"external_id": reference_id}
        else:
            path, params = "/ewallets/charges", {"reference_id": reference_id}

        data = await self._request(
            "funding_lookup", "GET", path,
            ok=READ_OK, timeout=self.config.status_timeout, params=params, missing_ok=True,
            expect_object=False,
        )
        if isinstance(data, dict):
            data = data.get("data", [])
        if not data:
            return None

        record = data[0]
        if product == "invoice":
            checkout_url = record.get("invoice_url")
        else:
            checkout_url = pick_checkout_url(record.get("actions"))
        return FundingResult(
            gateway_id=record["id"],
            status=normalize_funding_status(record.get("status"), self.metrics),
            product=product,
            checkout_url=checkout_url,
        )

    # ----------------------------
    # Disbursement (platform -> payee)
    # ----------------------------
    async def create_disbursement(
        self,
        reference_id: str,
        account_number: str,
        account_holder_name: str,
        amount: float,
        description: str,
        currency: Optional[str] = None,
    ) -> DisbursementResult:
        body = {
            "reference_id": reference_id,
            "channel_code": self.config.channel_code,
            "account_number": account_number,
            "account_holder_name": account_holder_name,
            "amount": amount,
            "currency": currency or self.config.currency,
            "description": description,
        }
        data = await self._request(
            "disbursement", "POST", "/disbursements",
            ok=DISBURSEMENT_OK,
            timeout=self.config.create_timeout,
            json=body,
            headers={"X-IDEMPOTENCY-KEY": reference_id},
        )

        disbursement_id = data.get("id")
        if not disbursement_id:
            raise UpstreamError(
                "gateway disbursement response has no id", operation="disbursement", body=str(data)[:BODY_SNIPPET_CHARS]
            )

        status = normalize_disbursement_status(data.get("status"), self.metrics)
        logger.info(f"Disbursement created: id={disbursement_id} status={status.value}")
        return DisbursementResult(disbursement_id=disbursement_id, status=status)
