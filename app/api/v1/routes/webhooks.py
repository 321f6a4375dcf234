"""Gateway webhook routes."""

import logging

from fastapi import APIRouter, Header, Request

from app.core.config import settings
from app.core.deps import DbSession, Gateway
from app.schemas.payment import WebhookAck
from app.services import reconciliation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: DbSession,
    gateway: Gateway,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> WebhookAck:
    """
    Receive a Stripe event.

    Any non-2xx answer makes Stripe deliver the event again; every handler is
    idempotent, so redelivery is safe.
    """
    raw_body = await request.body()
    event = gateway.verify_and_parse_event(raw_body, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    logger.info("Webhook %s (%s) received", event.id, event.type)

    result = await reconciliation.handle_gateway_event(db, event)
    return WebhookAck(event_type=event.type, outcome=result.outcome.value)
