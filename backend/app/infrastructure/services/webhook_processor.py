"""
Webhook Event Processor

Reconciles Stripe events into the payments ledger, the entitlement store and
gift code usage accounting.

Deliveries are at-least-once and may be reordered, so every handler is an
idempotent sequence of atomic upserts and conditional updates:
- payments are keyed by the gateway correlation id
- entitlements are keyed by (account, product), expiry is max-wins and the
  active flag follows the newest event time
- gift code usage is keyed by payment

All writes for one event share the caller's session and are committed
together by the caller.

Handled events:
- checkout.session.completed
- checkout.session.async_payment_succeeded / .async_payment_failed
- payment_intent.succeeded / payment_intent.payment_failed
- charge.refunded
- customer.subscription.created / .updated / .deleted
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog import Catalog
from app.domain.membership import (
    BillingCycle,
    PaymentStatus,
    Product,
    TransitionOutcome,
    WebhookAck,
    WebhookOutcome,
    add_billing_period,
    statuses_preceding,
    utcnow,
)
from app.infrastructure.db.models.account import AccountModel
from app.infrastructure.db.models.payment import PaymentModel
from app.infrastructure.db.repositories.account_repository import AccountRepository
from app.infrastructure.db.repositories.entitlement_repository import EntitlementRepository
from app.infrastructure.db.repositories.gift_code_repository import (
    GiftCodeRepository,
    RedemptionOutcome,
)
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.db.repositories.product_repository import ProductRepository
from app.infrastructure.db.repositories.webhook_event_repository import WebhookEventRepository
from app.infrastructure.exceptions import ReconciliationError, WebhookVerificationError


logger = logging.getLogger(__name__)

# Subscription statuses that grant access
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})

# Checkout payment states that confirm the purchase
PAID_CHECKOUT_STATES = frozenset({"paid", "no_payment_required"})

ACK_STATUS = {
    WebhookOutcome.PROCESSED: "processed",
    WebhookOutcome.DUPLICATE: "already_processed",
    WebhookOutcome.IGNORED: "ignored",
    WebhookOutcome.REJECTED: "rejected",
    WebhookOutcome.UNPROCESSABLE: "unprocessable",
}

HandlerResult = Tuple[WebhookOutcome, str]


def event_time(event: dict[str, Any]) -> datetime:
    """Gateway creation time of an event (UTC)."""
    created = event.get("created")
    if created is None:
        return utcnow()
    return datetime.fromtimestamp(int(created), tz=timezone.utc)


def _parse_amount(value: Any, field: str) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ReconciliationError(
            f"Malformed {field} in metadata: {value!r}",
            details={"field": field},
        )


def _parse_uuid(value: Any, field: str) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        raise ReconciliationError(
            f"Malformed {field} in metadata: {value!r}",
            details={"field": field},
        )


class WebhookProcessor:
    """
    Applies one verified Stripe event inside the caller's transaction.

    Usage:
        processor = WebhookProcessor(session)
        ack = await processor.process(event)
        await session.commit()
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._accounts = AccountRepository(session)
        self._products = ProductRepository(session)
        self._gift_codes = GiftCodeRepository(session)
        self._payments = PaymentRepository(session)
        self._entitlements = EntitlementRepository(session)
        self._events = WebhookEventRepository(session)

        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[HandlerResult]]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "checkout.session.async_payment_succeeded": self.handle_async_payment_succeeded,
            "checkout.session.async_payment_failed": self.handle_async_payment_failed,
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
            "charge.refunded": self.handle_charge_refunded,
            "customer.subscription.created": self.handle_subscription_changed,
            "customer.subscription.updated": self.handle_subscription_changed,
            "customer.subscription.deleted": self.handle_subscription_deleted,
        }

    # =========================================================================
    # Entry point
    # =========================================================================

    async def process(self, event: dict[str, Any], replay: bool = False) -> WebhookAck:
        """
        Apply an event and record its outcome.

        Args:
            event: Verified event envelope (id, type, created, data.object)
            replay: Operator replay of a queued event; skips the
                    already-processed short circuit

        Returns:
            WebhookAck describing the outcome

        Raises:
            Anything other than ReconciliationError propagates so the caller
            rolls back and the gateway redelivers.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise WebhookVerificationError("Event envelope is missing id or type")

        if not replay and await self._events.is_processed(event_id):
            logger.info(f"Event {event_id} ({event_type}) already processed, skipping")
            return self._ack(WebhookOutcome.DUPLICATE, event_id)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Unhandled event type: {event_type}")
            await self._events.mark_processed(event_id, event_type, WebhookOutcome.IGNORED)
            return self._ack(WebhookOutcome.IGNORED, event_id)

        logger.info(f"Processing webhook event: {event_type} ({event_id})")
        try:
            outcome, detail = await handler(event)
        except ReconciliationError as e:
            return await self._flag_unprocessable(event, e)

        await self._events.mark_processed(event_id, event_type, outcome)
        return self._ack(outcome, event_id, detail)

    async def _flag_unprocessable(
        self,
        event: dict[str, Any],
        error: ReconciliationError,
    ) -> WebhookAck:
        """Discard partial writes, queue the event for an operator, acknowledge it."""
        event_id, event_type = event["id"], event["type"]
        logger.error(f"Unprocessable event {event_type} ({event_id}): {error.message}")

        await self._session.rollback()
        await self._events.enqueue_unprocessed(
            event_id=event_id,
            event_type=event_type,
            reason=error.message,
            payload=event,
        )
        await self._events.mark_processed(event_id, event_type, WebhookOutcome.UNPROCESSABLE)
        return self._ack(WebhookOutcome.UNPROCESSABLE, event_id, error.message)

    @staticmethod
    def _ack(outcome: WebhookOutcome, event_id: str, detail: Optional[str] = None) -> WebhookAck:
        return WebhookAck(status=ACK_STATUS[outcome], event_id=event_id, detail=detail)

    # =========================================================================
    # Checkout
    # =========================================================================

    async def handle_checkout_completed(self, event: dict[str, Any]) -> HandlerResult:
        """
        Terminal purchase confirmation.

        The payment insert is the idempotency boundary: when the correlation
        id is already in the ledger nothing else is touched.
        """
        session_obj = event["data"]["object"]
        metadata = session_obj.get("metadata") or {}
        occurred_at = event_time(event)

        email = (session_obj.get("customer_details") or {}).get("email") or session_obj.get(
            "customer_email"
        )
        if not email:
            raise ReconciliationError(
                f"Checkout session {session_obj.get('id')} has no customer email"
            )

        catalog = await self._products.load_catalog()
        product = self._resolve_product(catalog, metadata.get("product_code"))

        try:
            cycle = BillingCycle(metadata.get("billing_cycle"))
        except ValueError:
            raise ReconciliationError(
                f"Unknown billing cycle {metadata.get('billing_cycle')!r}",
                details={"field": "billing_cycle"},
            )

        gift_code_id = _parse_uuid(metadata.get("gift_code_id"), "gift_code_id")
        original_amount = _parse_amount(metadata.get("original_amount"), "original_amount")
        if original_amount is None:
            original_amount = Catalog.price_for(product, cycle)
        discount_amount = _parse_amount(metadata.get("discount_amount"), "discount_amount") or Decimal("0")

        amount_total = session_obj.get("amount_total")
        if amount_total is not None:
            amount = Decimal(int(amount_total)) / 100
        else:
            amount = max(Decimal("0"), original_amount - discount_amount)

        correlation_id = session_obj.get("payment_intent") or session_obj["id"]
        paid = session_obj.get("payment_status") in PAID_CHECKOUT_STATES
        method_types = session_obj.get("payment_method_types") or []

        account, _ = await self._accounts.get_or_create_by_email(
            email,
            full_name=metadata.get("customer_name"),
            relation_to_product=metadata.get("relation_to_product"),
        )

        payment = await self._payments.insert_if_absent(
            external_payment_id=correlation_id,
            account_id=account.id,
            product_id=product.id,
            amount=amount,
            currency=session_obj.get("currency") or product.currency,
            original_amount=original_amount,
            discount_amount=discount_amount,
            billing_cycle=cycle,
            status=PaymentStatus.COMPLETED if paid else PaymentStatus.PENDING,
            payment_method=method_types[0] if method_types else None,
            gift_code_id=gift_code_id,
            stripe_customer_id=session_obj.get("customer"),
            stripe_subscription_id=session_obj.get("subscription"),
            stripe_session_id=session_obj.get("id"),
            stripe_invoice_id=session_obj.get("invoice"),
        )
        if payment is None:
            logger.info(f"Payment {correlation_id} already recorded, skipping side effects")
            return WebhookOutcome.DUPLICATE, f"payment {correlation_id} already recorded"

        logger.info(
            f"Recorded payment {correlation_id} for {account.email}: "
            f"{amount} {payment.currency} ({product.code}/{cycle.value})"
        )

        if paid:
            await self._entitlements.upsert_entitlement(
                account_id=account.id,
                product_id=product.id,
                package_code=product.code,
                is_active=True,
                expires_at=add_billing_period(occurred_at, cycle),
                event_at=occurred_at,
            )
        else:
            logger.info(
                f"Checkout {session_obj.get('id')} not paid yet "
                f"({session_obj.get('payment_status')}); access follows the subscription"
            )

        if gift_code_id:
            await self._redeem_gift_code(event, gift_code_id, account, payment.id)

        return WebhookOutcome.PROCESSED, f"payment {correlation_id} recorded"

    async def _redeem_gift_code(
        self,
        event: dict[str, Any],
        gift_code_id: UUID,
        account: AccountModel,
        payment_id: UUID,
    ) -> None:
        outcome = await self._gift_codes.redeem(gift_code_id, account.id, payment_id)

        if outcome is RedemptionOutcome.REDEEMED:
            logger.info(f"Redeemed gift code {gift_code_id} for payment {payment_id}")
        elif outcome is RedemptionOutcome.ALREADY_REDEEMED:
            logger.info(f"Gift code {gift_code_id} already redeemed for payment {payment_id}")
        else:
            # The purchase stands; an operator decides what to do about the code.
            reason = f"Gift code {gift_code_id} exhausted when redeeming payment {payment_id}"
            logger.error(reason)
            await self._events.enqueue_unprocessed(
                event_id=event["id"],
                event_type=event["type"],
                reason=reason,
                payload=event,
            )

    def _resolve_product(self, catalog: Catalog, product_code: Optional[str]) -> Product:
        if not product_code:
            raise ReconciliationError("Event metadata has no product_code")
        product = catalog.get(product_code)
        if product is None:
            raise ReconciliationError(
                f"Unknown product {product_code!r}",
                details={"product_code": product_code},
            )
        return product

    # =========================================================================
    # Payment status transitions
    # =========================================================================

    async def handle_payment_succeeded(self, event: dict[str, Any]) -> HandlerResult:
        return await self._transition_payment_intent(event, PaymentStatus.COMPLETED)

    async def handle_payment_failed(self, event: dict[str, Any]) -> HandlerResult:
        return await self._transition_payment_intent(event, PaymentStatus.FAILED)

    async def handle_charge_refunded(self, event: dict[str, Any]) -> HandlerResult:
        charge = event["data"]["object"]
        if not charge.get("refunded"):
            logger.info(f"Charge {charge.get('id')} partially refunded, ledger unchanged")
            return WebhookOutcome.IGNORED, "partial refund"

        payment_intent_id = charge.get("payment_intent")
        if not payment_intent_id:
            raise ReconciliationError(f"Charge {charge.get('id')} has no payment_intent")
        return await self._advance(
            payment_intent_id,
            PaymentStatus.REFUNDED,
            invoice_id=charge.get("invoice"),
            customer_id=charge.get("customer"),
        )

    async def _transition_payment_intent(
        self,
        event: dict[str, Any],
        target: PaymentStatus,
    ) -> HandlerResult:
        intent = event["data"]["object"]
        return await self._advance(
            intent["id"],
            target,
            invoice_id=intent.get("invoice"),
            customer_id=intent.get("customer"),
            ignore_unmatched_invoice=True,
        )

    async def _advance(
        self,
        external_payment_id: str,
        target: PaymentStatus,
        invoice_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        ignore_unmatched_invoice: bool = False,
    ) -> HandlerResult:
        outcome = await self._payments.advance_status(external_payment_id, target)

        if outcome is TransitionOutcome.NOT_FOUND:
            payment = await self._checkout_payment_for(target, invoice_id, customer_id)
            if payment is not None:
                logger.info(
                    f"Gateway payment {external_payment_id} belongs to checkout "
                    f"{payment.external_payment_id}"
                )
                external_payment_id = payment.external_payment_id
                outcome = await self._payments.advance_status(external_payment_id, target)

        if outcome is TransitionOutcome.APPLIED:
            logger.info(f"Payment {external_payment_id} -> {target.value}")
            return WebhookOutcome.PROCESSED, f"payment {external_payment_id} {target.value}"

        if outcome is TransitionOutcome.UNCHANGED:
            logger.info(f"Payment {external_payment_id} already {target.value}")
            return WebhookOutcome.PROCESSED, f"payment {external_payment_id} unchanged"

        if outcome is TransitionOutcome.REJECTED:
            logger.warning(
                f"Rejected backward transition of payment {external_payment_id} to {target.value}"
            )
            return WebhookOutcome.REJECTED, f"backward transition to {target.value} rejected"

        if invoice_id and ignore_unmatched_invoice:
            # Renewal invoices are reconciled through subscription events.
            logger.info(f"No ledger row for invoice payment {external_payment_id}")
            return WebhookOutcome.IGNORED, "invoice payment without ledger row"

        raise ReconciliationError(
            f"No payment recorded for {external_payment_id}",
            details={"external_payment_id": external_payment_id, "invoice_id": invoice_id},
        )

    async def _checkout_payment_for(
        self,
        target: PaymentStatus,
        invoice_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[PaymentModel]:
        """
        Ledger row of the checkout a gateway payment or charge settles.

        Subscription-mode checkouts are recorded under the session id, while
        their intents and charges carry the first invoice and the customer.
        The customer fallback only considers rows the transition can move
        forward, and never a row from a different invoice.
        """
        if invoice_id:
            payment = await self._payments.get_by_invoice_id(invoice_id)
            if payment is not None:
                return payment
        if not customer_id:
            return None

        payment = await self._payments.latest_for_customer(
            customer_id, statuses=statuses_preceding(target)
        )
        if payment is None:
            return None
        if invoice_id and payment.stripe_invoice_id and payment.stripe_invoice_id != invoice_id:
            return None
        return payment

    # =========================================================================
    # Delayed checkout payments
    # =========================================================================

    async def handle_async_payment_succeeded(self, event: dict[str, Any]) -> HandlerResult:
        """
        A checkout completed as ``unpaid`` has now been paid.

        Completes the ledger row recorded for the session and grants the
        billing period from this event's time.
        """
        session_obj = event["data"]["object"]
        payment = await self._session_payment(session_obj)
        outcome, detail = await self._advance(payment.external_payment_id, PaymentStatus.COMPLETED)

        if outcome is WebhookOutcome.PROCESSED:
            occurred_at = event_time(event)
            product_model = await self._products.get_by_id(payment.product_id)
            await self._entitlements.upsert_entitlement(
                account_id=payment.account_id,
                product_id=payment.product_id,
                package_code=product_model.code,
                is_active=True,
                expires_at=add_billing_period(occurred_at, BillingCycle(payment.billing_cycle)),
                event_at=occurred_at,
            )
        return outcome, detail

    async def handle_async_payment_failed(self, event: dict[str, Any]) -> HandlerResult:
        payment = await self._session_payment(event["data"]["object"])
        return await self._advance(payment.external_payment_id, PaymentStatus.FAILED)

    async def _session_payment(self, session_obj: dict[str, Any]) -> PaymentModel:
        payment = await self._payments.get_by_session_id(session_obj.get("id") or "")
        if payment is None:
            raise ReconciliationError(
                f"No payment recorded for checkout session {session_obj.get('id')}",
                details={"session_id": session_obj.get("id")},
            )
        return payment

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def handle_subscription_changed(self, event: dict[str, Any]) -> HandlerResult:
        """
        Renewals and plan changes.

        Access follows the subscription status; expiry moves to the current
        period end unless a later expiry is already stored.
        """
        subscription = event["data"]["object"]
        account_id, product = await self._resolve_subscription_owner(subscription)

        status = subscription.get("status")
        period_end = self._current_period_end(subscription)
        entitlement = await self._entitlements.upsert_entitlement(
            account_id=account_id,
            product_id=product.id,
            package_code=product.code,
            is_active=status in ACTIVE_SUBSCRIPTION_STATUSES,
            expires_at=period_end,
            event_at=event_time(event),
        )
        return (
            WebhookOutcome.PROCESSED,
            f"subscription {subscription.get('id')} {status}, active={entitlement.is_active}",
        )

    async def handle_subscription_deleted(self, event: dict[str, Any]) -> HandlerResult:
        """
        Cancellation clears the active flag and keeps expires_at.

        A cancellation that overtakes the purchase still leaves an inactive
        row stamped with its event time, so the older checkout cannot
        activate it afterwards.
        """
        subscription = event["data"]["object"]
        account_id, product = await self._resolve_subscription_owner(subscription)
        occurred_at = event_time(event)

        updated = await self._entitlements.set_active(
            account_id, product.id, False, event_at=occurred_at
        )
        if updated:
            logger.info(f"Deactivated {product.code} for account {account_id}")
            return WebhookOutcome.PROCESSED, f"subscription {subscription.get('id')} cancelled"

        if await self._entitlements.get(account_id, product.id) is None:
            await self._entitlements.upsert_entitlement(
                account_id=account_id,
                product_id=product.id,
                package_code=product.code,
                is_active=False,
                expires_at=None,
                event_at=occurred_at,
            )
            logger.warning(
                f"Subscription {subscription.get('id')} deleted before its purchase was "
                f"reconciled; recorded inactive {product.code} for account {account_id}"
            )
            return WebhookOutcome.PROCESSED, "cancellation recorded before purchase"

        logger.info(f"Newer event already decided {product.code} for account {account_id}")
        return WebhookOutcome.PROCESSED, "superseded by a newer event"

    async def _resolve_subscription_owner(
        self,
        subscription: dict[str, Any],
    ) -> Tuple[UUID, Product]:
        """
        (account, product) a subscription belongs to.

        Most recent payment by subscription id, then by customer id. When the
        checkout event has not landed yet, the subscription's own metadata
        identifies the purchaser.
        """
        payment = None
        if subscription.get("id"):
            payment = await self._payments.latest_for_subscription(subscription["id"])
        if payment is None and subscription.get("customer"):
            payment = await self._payments.latest_for_customer(subscription["customer"])

        if payment is not None:
            product_model = await self._products.get_by_id(payment.product_id)
            return payment.account_id, Product.model_validate(product_model)

        metadata = subscription.get("metadata") or {}
        email = metadata.get("customer_email")
        if not email:
            raise ReconciliationError(
                f"No payment found for subscription {subscription.get('id')} "
                f"or customer {subscription.get('customer')}",
                details={
                    "subscription_id": subscription.get("id"),
                    "customer_id": subscription.get("customer"),
                },
            )

        catalog = await self._products.load_catalog()
        product = self._resolve_product(catalog, metadata.get("product_code"))
        account, _ = await self._accounts.get_or_create_by_email(email)
        return account.id, product

    @staticmethod
    def _current_period_end(subscription: dict[str, Any]) -> Optional[datetime]:
        period_end = subscription.get("current_period_end")
        if period_end is None:
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        if period_end is None:
            return None
        return datetime.fromtimestamp(int(period_end), tz=timezone.utc)
