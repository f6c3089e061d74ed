# routers/webhooks.py
import hmac
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from notipay.core.config import settings
from notipay.core.errors import MalformedWebhookError, NotFoundError, NotipayError
from notipay.routers.payment_router import get_orchestrator
from notipay.services.orchestrator import PaymentOrchestrator

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = logging.getLogger("notipay.webhooks")


def verify_callback_token(x_callback_token: str = Header(None)):
    expected = settings.GATEWAY_WEBHOOK_TOKEN
    if not expected or not x_callback_token or not hmac.compare_digest(
        x_callback_token.encode(), expected.encode()
    ):
        logger.warning("Invalid webhook callback token received")
        raise HTTPException(status_code=401, detail="Unauthorized webhook")


@router.post("/gateway", dependencies=[Depends(verify_callback_token)])
async def gateway_webhook(request: Request, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.error("Invalid JSON in gateway webhook")
        raise HTTPException(400, "Invalid webhook payload")

    try:
        await orchestrator.handle_webhook(payload)
    except MalformedWebhookError as e:
        # permanent rejection, redelivery will not help
        logger.warning(f"Malformed webhook rejected: {e}")
        raise HTTPException(400, str(e))
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except NotipayError as e:
        # anything else invites the gateway to redeliver
        logger.error(f"Webhook processing failed: {e}")
        raise HTTPException(500, "Webhook processing failed")

    return {"status": "success"}
