"""
Payment gateway webhook endpoint.

Deliveries are signature-verified, de-duplicated by event id and handed to
the subscription engine. A delivery that fails mid-way releases its claim so
the gateway's redelivery is processed.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from routers.subscriptions import get_subscription_service
from services.subscriptions import SubscriptionService
from services.webhook_dedupe import claim_event, release_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
):
    payload = await request.body()
    event = service.gateway.parse_event(payload, stripe_signature)

    if not await claim_event(event.id):
        return {"received": True, "duplicate": True}

    try:
        await service.handle_event(db, event)
    except Exception:
        logger.exception("Webhook %s (%s) failed", event.id, event.type)
        await release_event(event.id)
        raise

    return {"received": True, "duplicate": False}
