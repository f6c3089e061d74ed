# models/payment_model.py
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

PENDING = "PENDING"
SUCCEEDED = "SUCCEEDED"
EXPIRED = "EXPIRED"

PAYMENT_STATUSES = (PENDING, SUCCEEDED, EXPIRED)

PaymentStatus = Literal["PENDING", "SUCCEEDED", "EXPIRED"]
DisbursementStatus = Literal["PENDING", "SUCCEEDED"]
FundingProduct = Literal["charge", "invoice"]

DISBURSEMENT_SUFFIX = "-disb"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentCreate(BaseModel):
    """Payload sent by the app when a payer requests a transfer."""
    payer_id: str
    payee_id: str
    amount: float = Field(..., gt=0, description="Amount in the gateway currency")
    title: str
    description: str


class Payment(BaseModel):
    """One peer-to-peer transfer: a funding charge/invoice plus its payout."""
    id: str = Field(..., alias="_id")
    reference_id: str

    # Parties (references into the user store)
    payer_id: str
    payee_id: str

    amount: float = Field(..., gt=0)
    title: str
    description: str

    status: PaymentStatus = PENDING
    funding_product: FundingProduct = "charge"

    # Gateway correlation
    charge_id: Optional[str] = None
    invoice_id: Optional[str] = None
    checkout_url: Optional[str] = None   # charge flow only
    invoice_url: Optional[str] = None    # invoice flow only
    disbursement_id: Optional[str] = None
    disbursement_status: Optional[DisbursementStatus] = None

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {
        "populate_by_name": True,
    }

    @property
    def gateway_id(self) -> Optional[str]:
        return self.charge_id or self.invoice_id

    @property
    def disbursement_reference_id(self) -> str:
        return f"{self.reference_id}{DISBURSEMENT_SUFFIX}"

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


# ----------------------------
# Write-ahead record of a gateway creation call
# ----------------------------
INTENT_OPEN = "OPEN"
INTENT_RECORDED = "RECORDED"
INTENT_ABANDONED = "ABANDONED"


class PaymentIntent(BaseModel):
    """
    Written before the funding request leaves for the gateway, keyed by the
    local reference id, so a gateway success followed by a failed local
    insert can be found and repaired later.
    """
    reference_id: str
    payment_id: str
    payer_id: str
    payee_id: str
    amount: float
    title: str
    description: str
    funding_product: FundingProduct = "charge"

    state: Literal["OPEN", "RECORDED", "ABANDONED"] = INTENT_OPEN
    gateway_id: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ReconcileReport(BaseModel):
    recorded: int = 0
    repaired: int = 0
    abandoned: int = 0
    failed: int = 0
