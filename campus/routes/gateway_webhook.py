"""
Payment Gateway Webhook

Receives Stripe events, verifies their signature and hands them to the
GatewayEventProcessor.
"""

import json
import logging
from typing import Any

import stripe
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.exceptions import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from campus.config import settings
from campus.database import get_db
from campus.exceptions import GatewayNotConfiguredError
from campus.services.access_service import AccessService
from campus.services.gateway_events import GatewayEventProcessor
from campus.services.payment_gateway import PaymentGateway, StripeGateway
from campus.utils.session import get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_gateway() -> PaymentGateway:
    return StripeGateway.from_settings()


def get_webhook_secret() -> str:
    if not settings.stripe_webhook_secret:
        raise GatewayNotConfiguredError(missing="stripe_webhook_secret", operation="webhook")
    return settings.stripe_webhook_secret


async def get_event_processor(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> GatewayEventProcessor:
    session_store = await get_session_manager()
    return GatewayEventProcessor(db, AccessService(db, gateway, session_store))


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def receive_stripe_event(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    secret: str = Depends(get_webhook_secret),
    processor: GatewayEventProcessor = Depends(get_event_processor),
) -> dict[str, Any]:
    payload = await request.body()
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Rejected Stripe webhook with bad signature: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from e

    event = json.loads(payload)
    result = await processor.process(event["id"], event["type"], event.get("data", {}).get("object", {}))
    return {
        "received": True,
        "event_id": result.event_id,
        "action": result.action,
        "duplicate": result.duplicate,
    }
