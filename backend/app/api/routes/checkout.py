"""
Checkout Routes

Create hosted checkout sessions and report purchase confirmation status.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_payment_gateway
from app.domain.membership import CheckoutRequest, CheckoutResponse, CheckoutStatusResponse
from app.infrastructure.db.database import get_session
from app.infrastructure.payments.stripe_service import StripeService
from app.infrastructure.services.checkout_service import CheckoutService
from app.infrastructure.services.confirmation_service import ConfirmationService


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/checkout/sessions", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    stripe_service: StripeService = Depends(get_payment_gateway),
):
    """
    Create a Stripe Checkout Session for a membership package.

    Gift code rejections are returned with their reason (CodeNotFound,
    CodeExpired, CodeExhausted, ...) and no session is created.
    """
    service = CheckoutService(session, stripe_service)
    return await service.create_session(body, origin=request.headers.get("origin"))


@router.get("/checkout/sessions/{session_id}/status", response_model=CheckoutStatusResponse)
async def get_checkout_status(
    session_id: str,
    session: AsyncSession = Depends(get_session),
):
    """
    Confirmation view status for a returning purchaser.

    Returns "processing" when the webhook has not been reconciled yet.
    """
    service = ConfirmationService(session)
    return await service.get_status(session_id)
