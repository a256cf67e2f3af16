"""
Payment Repository

Payments ledger. Rows are inserted once per gateway correlation id and only
ever move status forward.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.membership import (
    BillingCycle,
    PaymentStatus,
    TransitionOutcome,
    statuses_preceding,
    utcnow,
)
from app.infrastructure.db.models.payment import PaymentModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[PaymentModel]):
    """Repository for the payments ledger."""

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentModel, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_external_id(self, external_payment_id: str) -> Optional[PaymentModel]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.external_payment_id == external_payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_session_id(self, stripe_session_id: str) -> Optional[PaymentModel]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.stripe_session_id == stripe_session_id)
            .order_by(PaymentModel.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_subscription(self, stripe_subscription_id: str) -> Optional[PaymentModel]:
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.stripe_subscription_id == stripe_subscription_id)
            .order_by(PaymentModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_invoice_id(self, stripe_invoice_id: str) -> Optional[PaymentModel]:
        """Payment whose checkout produced the given first invoice."""
        stmt = (
            select(PaymentModel)
            .where(PaymentModel.stripe_invoice_id == stripe_invoice_id)
            .order_by(PaymentModel.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_customer(
        self,
        stripe_customer_id: str,
        statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[PaymentModel]:
        """Most recent payment for a Stripe customer, optionally limited to some statuses."""
        stmt = select(PaymentModel).where(PaymentModel.stripe_customer_id == stripe_customer_id)
        if statuses is not None:
            stmt = stmt.where(PaymentModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(PaymentModel.created_at.desc()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def insert_if_absent(
        self,
        external_payment_id: str,
        account_id: UUID,
        product_id: UUID,
        amount: Decimal,
        currency: str,
        original_amount: Decimal,
        discount_amount: Decimal,
        billing_cycle: BillingCycle,
        status: PaymentStatus = PaymentStatus.COMPLETED,
        payment_method: Optional[str] = None,
        gift_code_id: Optional[UUID] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_session_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[PaymentModel]:
        """
        Insert a ledger row unless one exists for the correlation id.

        This is the idempotency boundary for checkout reconciliation: a
        duplicate insert becomes a harmless conflict.

        Returns:
            The new PaymentModel, or None if the id was already recorded
        """
        now = created_at or utcnow()
        stmt = (
            self._insert()
            .values(
                id=uuid4(),
                external_payment_id=external_payment_id,
                account_id=account_id,
                product_id=product_id,
                amount=amount,
                currency=currency.upper(),
                original_amount=original_amount,
                discount_amount=discount_amount,
                billing_cycle=billing_cycle.value,
                status=status.value,
                payment_method=payment_method,
                gift_code_id=gift_code_id,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
                stripe_session_id=stripe_session_id,
                stripe_invoice_id=stripe_invoice_id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["external_payment_id"])
            .returning(PaymentModel.id)
        )
        result = await self.session.execute(stmt)
        payment_id = result.scalar_one_or_none()
        if payment_id is None:
            return None
        return await self.get_by_id(payment_id)

    async def advance_status(
        self,
        external_payment_id: str,
        target: PaymentStatus,
    ) -> TransitionOutcome:
        """
        Move a payment forward to ``target``.

        Uses a conditional UPDATE on the expected prior statuses so that
        concurrent deliveries cannot move a row backwards.
        """
        stmt = (
            update(PaymentModel)
            .where(
                PaymentModel.external_payment_id == external_payment_id,
                PaymentModel.status.in_([s.value for s in statuses_preceding(target)]),
            )
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount:
            return TransitionOutcome.APPLIED

        current = await self.get_by_external_id(external_payment_id)
        if current is None:
            return TransitionOutcome.NOT_FOUND
        if current.status == target.value:
            return TransitionOutcome.UNCHANGED
        return TransitionOutcome.REJECTED
