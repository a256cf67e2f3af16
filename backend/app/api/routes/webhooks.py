"""
Stripe Webhook Handler

Receives Stripe event notifications, verifies them and hands them to the
WebhookProcessor.

The response is 200 only after the event's side effects are committed, so
Stripe's retry-on-failure policy provides at-least-once delivery:
- missing or invalid signature: 400, nothing written
- duplicate, ignored or unprocessable event: 200
- any other failure: rolled back, 500, Stripe redelivers
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_payment_gateway
from app.domain.membership import WebhookAck
from app.infrastructure.db.database import get_session
from app.infrastructure.exceptions import WebhookVerificationError
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.webhook_processor import WebhookProcessor


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    stripe_service: StripeService = Depends(get_payment_gateway),
):
    """
    Handle Stripe webhook events.

    Verifies the signature against the raw body before parsing anything.
    """
    # Get raw payload and signature
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    # Verify signature
    try:
        stripe_service.verify_webhook_signature(payload, signature)
        event = json.loads(payload)
    except (WebhookVerificationError, ValueError) as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    processor = WebhookProcessor(session)
    try:
        ack = await processor.process(event)
        await session.commit()
    except WebhookVerificationError as e:
        await session.rollback()
        logger.error(f"Malformed webhook event: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed event"
        )
    except Exception as e:
        await session.rollback()
        logger.exception(f"Error processing webhook {event.get('type')} ({event.get('id')}): {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return ack
