"""
Purchase Confirmation Service

Backs the post-redirect confirmation view. The purchaser usually returns
from the hosted checkout before the webhook lands, so the ledger is polled
briefly and "processing" is returned instead of an error.
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import get_settings
from app.domain.membership import CheckoutStatusResponse
from app.infrastructure.db.models.payment import PaymentModel
from app.infrastructure.db.repositories.entitlement_repository import EntitlementRepository
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.db.repositories.product_repository import ProductRepository


logger = logging.getLogger(__name__)


class ConfirmationService:
    """Reads reconciliation results for a checkout session."""

    def __init__(
        self,
        session: AsyncSession,
        wait_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self._session = session
        self._payments = PaymentRepository(session)
        self._products = ProductRepository(session)
        self._entitlements = EntitlementRepository(session)
        self._wait_seconds = (
            settings.confirmation_wait_seconds if wait_seconds is None else wait_seconds
        )
        self._poll_interval = (
            settings.confirmation_poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )

    async def get_status(self, session_id: str) -> CheckoutStatusResponse:
        """
        Status of a checkout session, waiting briefly for the webhook.

        Returns:
            CheckoutStatusResponse with the payment status, or "processing"
            if no payment has been recorded within the wait window
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_seconds

        while True:
            payment = await self._payments.get_by_session_id(session_id)
            if payment is not None:
                return await self._describe(session_id, payment)

            if loop.time() >= deadline:
                logger.info(f"Checkout {session_id} not reconciled yet, reporting processing")
                return CheckoutStatusResponse(session_id=session_id, status="processing")

            # End the read transaction so the next poll sees new commits
            await self._session.rollback()
            await asyncio.sleep(self._poll_interval)

    async def _describe(self, session_id: str, payment: PaymentModel) -> CheckoutStatusResponse:
        product = await self._products.get_by_id(payment.product_id)
        entitlement = await self._entitlements.get(payment.account_id, payment.product_id)
        return CheckoutStatusResponse(
            session_id=session_id,
            status=payment.status,
            package_type=product.code if product else None,
            product_name=product.name if product else None,
            expires_at=entitlement.expires_at if entitlement else None,
        )
