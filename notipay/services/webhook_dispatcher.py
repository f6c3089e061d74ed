# services/webhook_dispatcher.py
import logging
from dataclasses import dataclass, field
from typing import Optional

from notipay.core.errors import MalformedWebhookError

logger = logging.getLogger("notipay.webhooks")

FUNDING = "funding"
DISBURSEMENT = "disbursement"
IGNORED = "ignored"

FUNDING_EVENTS = {"ewallet.capture"}
FUNDING_PREFIXES = ("ewallet.charge.", "charge.", "invoice.")
DISBURSEMENT_PREFIXES = ("disbursement.", "ph_disbursement.")

# Event suffixes that carry a status when data.status is absent
STATUS_SUFFIXES = {"PAID", "SETTLED", "EXPIRED", "SUCCEEDED", "COMPLETED", "PENDING"}


@dataclass(frozen=True)
class WebhookEvent:
    event: str
    kind: str
    object_id: str
    status: str
    reference_id: Optional[str] = None
    data: dict = field(default_factory=dict, compare=False, repr=False)


def event_kind(event: str) -> str:
    if event in FUNDING_EVENTS or event.startswith(FUNDING_PREFIXES):
        return FUNDING
    if event.startswith(DISBURSEMENT_PREFIXES):
        return DISBURSEMENT
    return IGNORED


def classify_event(payload) -> WebhookEvent:
    """
    Validate the envelope {"event": str, "data": {"id": str, "status": str}}
    and say which handler it belongs to.
    """
    if not isinstance(payload, dict):
        raise MalformedWebhookError("webhook payload must be a JSON object")

    event = payload.get("event")
    if not isinstance(event, str) or not event.strip():
        raise MalformedWebhookError("invalid webhook event type")
    event = event.strip().lower()

    data = payload.get("data")
    if not isinstance(data, dict):
        raise MalformedWebhookError("invalid webhook data")

    object_id = data.get("id")
    if not isinstance(object_id, str) or not object_id.strip():
        raise MalformedWebhookError("webhook data has no id")

    status = data.get("status")
    if not isinstance(status, str) or not status.strip():
        suffix = event.rsplit(".", 1)[-1].upper()
        status = suffix if suffix in STATUS_SUFFIXES else ""

    reference_id = data.get("reference_id") or data.get("external_id")
    if not isinstance(reference_id, str) or not reference_id.strip():
        reference_id = None

    return WebhookEvent(
        event=event,
        kind=event_kind(event),
        object_id=object_id.strip(),
        status=status.strip().upper(),
        reference_id=reference_id.strip() if reference_id else None,
        data=data,
    )


class WebhookDispatcher:
    """Routes classified gateway events to the orchestrator's transition handlers."""

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

    async def dispatch(self, payload) -> WebhookEvent:
        event = classify_event(payload)
        logger.info(f"Received webhook: event={event.event} id={event.object_id} status={event.status}")

        if event.kind == FUNDING:
            await self.orchestrator.apply_funding_event(event.object_id, event.status)
        elif event.kind == DISBURSEMENT:
            await self.orchestrator.apply_disbursement_event(event.object_id, event.status, event.reference_id)
        else:
            logger.info(f"Unhandled webhook event type: {event.event}")
        return event
