# routers/payment_router.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status

from notipay.models.payment_model import Payment, PaymentCreate
from notipay.services.orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


# ----------------------------
# 1. CREATE PAYMENT
# ----------------------------
@router.post("/", response_model=Payment, status_code=status.HTTP_201_CREATED)
async def create_payment(payload: PaymentCreate, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.create_payment(
        payload.payer_id,
        payload.payee_id,
        payload.amount,
        payload.title,
        payload.description,
    )


# ----------------------------
# 2. LIST / FETCH
# ----------------------------
@router.get("/", response_model=List[Payment])
async def list_payments(
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_payments(status, start_date, end_date)


@router.get("/user/{user_id}", response_model=List[Payment])
async def list_user_payments(
    user_id: str,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_payments_for_user(user_id, status, start_date, end_date)


@router.get("/{payment_id}", response_model=Payment)
async def get_payment(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_payment(payment_id)


# ----------------------------
# 3. TRANSITIONS
# ----------------------------
# GET is kept because the gateway's success redirect lands here
@router.api_route("/{payment_id}/confirm", methods=["GET", "POST"], response_model=Payment)
async def confirm_payment(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.confirm_payment(payment_id)


@router.post("/{payment_id}/disbursement", response_model=Payment, status_code=status.HTTP_202_ACCEPTED)
async def create_disbursement(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.create_disbursement(payment_id)


@router.post("/{payment_id}/refresh", response_model=Payment)
async def refresh_payment(payment_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.refresh_payment_status(payment_id)
