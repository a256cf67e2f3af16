"""
Integration tests for webhook reconciliation.

Events are applied through WebhookProcessor against SQLite, committing after
each delivery the way the webhook route does. Covers redelivery, reordering,
gift code accounting and the operator queue.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.domain.membership import BillingCycle, CheckoutRequest, add_billing_period
from app.infrastructure.db.models import ProcessedWebhookEventModel
from app.infrastructure.db.repositories import (
    AccountRepository,
    EntitlementRepository,
    GiftCodeRepository,
    PaymentRepository,
    ProductRepository,
    WebhookEventRepository,
)
from app.domain.membership import DiscountKind
from app.infrastructure.exceptions import (
    CodeExhausted,
    CodeWrongProduct,
    WebhookVerificationError,
)
from app.infrastructure.services.checkout_service import CheckoutService
from app.infrastructure.services.webhook_processor import WebhookProcessor


@pytest.fixture
def deliver(session):
    """Apply one event and commit, as the webhook route does."""
    async def _deliver(event, replay=False):
        ack = await WebhookProcessor(session).process(event, replay=replay)
        await session.commit()
        return ack

    return _deliver


async def entitlement_for(session, product, email="buyer@example.com"):
    account = await AccountRepository(session).get_by_email(email)
    if account is None:
        return None
    return await EntitlementRepository(session).get(account.id, product.id)


def at(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class TestCheckoutCompleted:

    async def test_grants_entitlement_and_records_payment(self, session, products, deliver, checkout_completed):
        created = int(time.time())
        ack = await deliver(checkout_completed(payment_intent="pi_1", created=created))

        assert ack.status == "processed"
        payment = await PaymentRepository(session).get_by_external_id("pi_1")
        assert payment.status == "completed"
        assert payment.amount == Decimal("328")
        assert payment.stripe_session_id == "cs_test_123"
        assert payment.payment_method == "card"

        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.is_active is True
        assert entitlement.expires_at == add_billing_period(at(created), BillingCycle.YEARLY)

    async def test_correlation_falls_back_to_session_id(self, session, products, deliver, checkout_completed):
        await deliver(checkout_completed(session_id="cs_no_intent"))
        assert await PaymentRepository(session).get_by_external_id("cs_no_intent") is not None

    async def test_account_created_from_attribution(self, session, products, deliver, checkout_completed):
        await deliver(checkout_completed(email="New.Member@Example.com"))

        account = await AccountRepository(session).get_by_email("new.member@example.com")
        assert account.full_name == "Test Buyer"
        assert account.relation_to_product == "member"

    async def test_unpaid_checkout_is_pending_without_access(self, session, products, deliver, checkout_completed):
        ack = await deliver(checkout_completed(payment_intent="pi_1", payment_status="unpaid"))

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("pi_1")).status == "pending"
        assert await entitlement_for(session, products["country_basic"]) is None

    async def test_ledger_records_charged_total(self, session, products, deliver, checkout_completed):
        """A coupon rounded to two decimals may charge slightly more than the quote."""
        await deliver(
            checkout_completed(
                original_amount="328.00",
                discount_amount="66.00",
                amount_total=26201,
                invoice="in_1",
            )
        )

        payment = await PaymentRepository(session).get_by_external_id("cs_test_123")
        assert payment.amount == Decimal("262.01")
        assert payment.discount_amount == Decimal("66.00")
        assert payment.stripe_invoice_id == "in_1"


class TestRedelivery:

    async def test_same_event_twice(self, session, products, deliver, checkout_completed, create_gift_code):
        code = await create_gift_code("SUMMER25", usage_limit=5)
        event = checkout_completed(
            payment_intent="pi_1",
            gift_code_id=str(code.id),
            discount_amount="66",
            amount_total=26200,
        )

        first = await deliver(event)
        second = await deliver(event)

        assert first.status == "processed"
        assert second.status == "already_processed"
        assert await PaymentRepository(session).count() == 1
        assert await GiftCodeRepository(session).count_usages(code.id) == 1
        assert (await GiftCodeRepository(session).find("SUMMER25")).used_count == 1

    async def test_same_payment_under_new_event_id(self, session, products, deliver, checkout_completed, create_gift_code):
        code = await create_gift_code("SUMMER25", usage_limit=5)
        kwargs = dict(payment_intent="pi_1", gift_code_id=str(code.id), discount_amount="66")

        await deliver(checkout_completed(event_id="evt_a", **kwargs))
        ack = await deliver(checkout_completed(event_id="evt_b", **kwargs))

        assert ack.status == "already_processed"
        assert await PaymentRepository(session).count() == 1
        assert (await GiftCodeRepository(session).find("SUMMER25")).used_count == 1

    async def test_entitlement_row_is_unique(self, session, products, deliver, checkout_completed):
        await deliver(checkout_completed(payment_intent="pi_1", session_id="cs_1"))
        await deliver(checkout_completed(payment_intent="pi_2", session_id="cs_2"))

        assert await PaymentRepository(session).count() == 2
        account = await AccountRepository(session).get_by_email("buyer@example.com")
        active = await EntitlementRepository(session).list_active_entitlements(account.id)
        assert len(active) == 1


class TestSubscriptionLifecycle:

    async def test_deleted_after_created_keeps_expiry(
        self, session, products, deliver, checkout_completed, subscription_event
    ):
        now = int(time.time())
        await deliver(checkout_completed(created=now - 100))
        before = await entitlement_for(session, products["country_basic"])

        ack = await deliver(
            subscription_event("customer.subscription.deleted", status="canceled", created=now)
        )

        assert ack.status == "processed"
        after = await entitlement_for(session, products["country_basic"])
        assert after.is_active is False
        assert after.expires_at == before.expires_at

    async def test_renewal_extends_expiry(self, session, products, deliver, checkout_completed, subscription_event):
        now = int(time.time())
        await deliver(checkout_completed(billing_cycle="monthly", created=now - 100))
        period_end = now + 400 * 86400

        await deliver(subscription_event(current_period_end=period_end, created=now))

        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.expires_at == at(period_end)
        assert entitlement.is_active is True

    async def test_period_end_read_from_items(self, session, products, deliver, checkout_completed, subscription_event):
        now = int(time.time())
        await deliver(checkout_completed(billing_cycle="monthly", created=now - 100))
        period_end = now + 90 * 86400
        event = subscription_event(created=now)
        event["data"]["object"]["items"] = {"data": [{"current_period_end": period_end}]}

        await deliver(event)

        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.expires_at == at(period_end)

    async def test_stale_update_does_not_shorten_expiry(
        self, session, products, deliver, checkout_completed, subscription_event
    ):
        now = int(time.time())
        await deliver(checkout_completed(created=now - 100))
        before = await entitlement_for(session, products["country_basic"])

        await deliver(subscription_event(current_period_end=now + 86400, created=now))

        after = await entitlement_for(session, products["country_basic"])
        assert after.expires_at == before.expires_at

    async def test_past_due_deactivates(self, session, products, deliver, checkout_completed, subscription_event):
        now = int(time.time())
        await deliver(checkout_completed(created=now - 100))
        await deliver(subscription_event(status="past_due", created=now))

        assert (await entitlement_for(session, products["country_basic"])).is_active is False

    async def test_update_before_checkout(self, session, products, deliver, checkout_completed, subscription_event):
        """A newer subscription state survives an older checkout arriving late."""
        now = int(time.time())
        metadata = {"customer_email": "buyer@example.com", "product_code": "country_basic"}

        first = await deliver(
            subscription_event(status="past_due", metadata=metadata, created=now)
        )
        assert first.status == "processed"

        await deliver(checkout_completed(created=now - 3600))

        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.is_active is False
        assert entitlement.expires_at == add_billing_period(at(now - 3600), BillingCycle.YEARLY)
        assert await PaymentRepository(session).count() == 1

    async def test_cancellation_before_checkout(
        self, session, products, deliver, checkout_completed, subscription_event
    ):
        """A cancellation that overtakes the purchase keeps the late checkout inactive."""
        now = int(time.time())
        metadata = {"customer_email": "buyer@example.com", "product_code": "country_basic"}

        ack = await deliver(
            subscription_event(
                "customer.subscription.deleted", status="canceled", metadata=metadata, created=now
            )
        )
        assert ack.status == "processed"

        await deliver(checkout_completed(created=now - 3600))

        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.is_active is False
        assert entitlement.expires_at == add_billing_period(at(now - 3600), BillingCycle.YEARLY)
        account = await AccountRepository(session).get_by_email("buyer@example.com")
        assert await EntitlementRepository(session).has_active_access(account.id, "country_basic") is False
        assert await PaymentRepository(session).count() == 1

    async def test_reactivation_after_cancel(
        self, session, products, deliver, checkout_completed, subscription_event
    ):
        now = int(time.time())
        await deliver(checkout_completed(created=now - 200))
        await deliver(subscription_event("customer.subscription.deleted", status="canceled", created=now - 100))
        await deliver(subscription_event(status="active", current_period_end=now + 86400, created=now))

        assert (await entitlement_for(session, products["country_basic"])).is_active is True

    async def test_unknown_subscription_is_queued(self, session, products, deliver, subscription_event):
        ack = await deliver(subscription_event(subscription_id="sub_unknown", customer="cus_unknown"))

        assert ack.status == "unprocessable"
        queued = await WebhookEventRepository(session).list_unprocessed()
        assert [q.event_type for q in queued] == ["customer.subscription.updated"]


class TestGiftCodeAccounting:

    async def test_summer25_single_use(
        self, session, products, deliver, checkout_completed, create_gift_code, mock_stripe_service
    ):
        code = await create_gift_code("SUMMER25", usage_limit=1)
        service = CheckoutService(session, mock_stripe_service)
        request = CheckoutRequest(
            package_type="country_basic",
            billing_cycle="yearly",
            email="buyer@example.com",
            gift_code_id="SUMMER25",
        )

        await service.create_session(request)

        mock_stripe_service.get_or_create_coupon.assert_awaited_once_with("SUMMER25", Decimal("20.12"))
        kwargs = mock_stripe_service.create_checkout_session.call_args.kwargs
        assert kwargs["coupon_id"] == "giftcode-SUMMER25-20.12"
        assert kwargs["price_id"] == "price_country_basic_year"
        assert Decimal(kwargs["metadata"]["final_amount"]) == Decimal("262")
        assert kwargs["metadata"]["gift_code_id"] == str(code.id)

        ack = await deliver(
            checkout_completed(
                payment_intent="pi_1",
                gift_code_id=kwargs["metadata"]["gift_code_id"],
                original_amount=kwargs["metadata"]["original_amount"],
                discount_amount=kwargs["metadata"]["discount_amount"],
                amount_total=26200,
            )
        )
        assert ack.status == "processed"

        payment = await PaymentRepository(session).get_by_external_id("pi_1")
        assert payment.amount == Decimal("262")
        assert payment.discount_amount == Decimal("66")
        assert payment.gift_code_id == code.id
        assert (await GiftCodeRepository(session).find("SUMMER25")).used_count == 1

        with pytest.raises(CodeExhausted):
            await service.create_session(request)

    async def test_free_access_for_other_product(
        self, session, products, create_gift_code, mock_stripe_service
    ):
        await create_gift_code(
            "FREEWW",
            kind=DiscountKind.FREE_ACCESS,
            discount_percentage=None,
            product_code="worldwide_plus",
        )
        service = CheckoutService(session, mock_stripe_service)
        request = CheckoutRequest(
            package_type="country_basic",
            billing_cycle="monthly",
            email="buyer@example.com",
            gift_code_id="FREEWW",
        )

        with pytest.raises(CodeWrongProduct):
            await service.create_session(request)

        mock_stripe_service.create_checkout_session.assert_not_called()
        mock_stripe_service.get_or_create_coupon.assert_not_called()

    async def test_exhausted_at_redemption_keeps_purchase(
        self, session, products, deliver, checkout_completed, create_gift_code
    ):
        code = await create_gift_code("LASTONE", usage_limit=1)

        await deliver(checkout_completed(payment_intent="pi_1", session_id="cs_1", gift_code_id=str(code.id)))
        ack = await deliver(
            checkout_completed(
                payment_intent="pi_2",
                session_id="cs_2",
                email="other@example.com",
                gift_code_id=str(code.id),
            )
        )

        assert ack.status == "processed"
        assert await PaymentRepository(session).count() == 2
        assert await entitlement_for(session, products["country_basic"], "other@example.com") is not None

        gift_codes = GiftCodeRepository(session)
        assert (await gift_codes.find("LASTONE")).used_count == 1
        assert await gift_codes.count_usages(code.id) == 1

        queued = await WebhookEventRepository(session).list_unprocessed()
        assert len(queued) == 1
        assert "exhausted" in queued[0].reason


class TestOperatorQueue:

    async def test_unknown_product_is_queued_then_replayed(self, session, products, deliver, checkout_completed):
        event = checkout_completed(product_code="family_plus")

        ack = await deliver(event)

        assert ack.status == "unprocessable"
        assert await PaymentRepository(session).count() == 0
        assert await AccountRepository(session).get_by_email("buyer@example.com") is None

        events = WebhookEventRepository(session)
        queued = await events.list_unprocessed()
        assert len(queued) == 1
        assert queued[0].event_id == event["id"]
        assert "family_plus" in queued[0].reason

        # Redelivery is acknowledged without a second queue entry
        assert (await deliver(event)).status == "already_processed"
        assert len(await events.list_unprocessed()) == 1

        await ProductRepository(session).upsert_by_code(
            code="family_plus",
            name="Family Plus",
            price_monthly=Decimal("79"),
            price_yearly=Decimal("664"),
            currency="DKK",
        )
        await session.commit()

        replayed = await deliver(queued[0].payload, replay=True)

        assert replayed.status == "processed"
        assert await PaymentRepository(session).count() == 1
        marker = await session.execute(
            select(ProcessedWebhookEventModel.outcome).where(
                ProcessedWebhookEventModel.event_id == event["id"]
            )
        )
        assert marker.scalar_one() == "processed"

    async def test_malformed_metadata_is_queued(self, session, products, deliver, checkout_completed):
        ack = await deliver(checkout_completed(gift_code_id="not-a-uuid"))

        assert ack.status == "unprocessable"
        assert await PaymentRepository(session).count() == 0

    async def test_missing_email_is_queued(self, session, products, deliver, checkout_completed):
        event = checkout_completed()
        event["data"]["object"]["customer_details"] = {}

        assert (await deliver(event)).status == "unprocessable"


class TestPaymentTransitions:

    @pytest.fixture
    async def pending_payment(self, products, deliver, checkout_completed):
        await deliver(checkout_completed(payment_intent="pi_1", payment_status="unpaid"))

    async def test_success_then_late_failure(self, session, pending_payment, deliver, make_event):
        ack = await deliver(make_event("payment_intent.succeeded", {"id": "pi_1"}))
        assert ack.status == "processed"

        late = await deliver(make_event("payment_intent.payment_failed", {"id": "pi_1"}))
        assert late.status == "rejected"
        assert (await PaymentRepository(session).get_by_external_id("pi_1")).status == "completed"

    async def test_failure_then_success(self, session, pending_payment, deliver, make_event):
        await deliver(make_event("payment_intent.payment_failed", {"id": "pi_1"}))
        await deliver(make_event("payment_intent.succeeded", {"id": "pi_1"}))

        assert (await PaymentRepository(session).get_by_external_id("pi_1")).status == "completed"

    async def test_full_refund(self, session, pending_payment, deliver, make_event):
        await deliver(make_event("payment_intent.succeeded", {"id": "pi_1"}))
        ack = await deliver(
            make_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "refunded": True})
        )

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("pi_1")).status == "refunded"

    async def test_partial_refund_is_ignored(self, session, pending_payment, deliver, make_event):
        ack = await deliver(
            make_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "refunded": False})
        )

        assert ack.status == "ignored"
        assert (await PaymentRepository(session).get_by_external_id("pi_1")).status == "pending"

    async def test_unknown_intent_is_queued(self, session, products, deliver, make_event):
        ack = await deliver(make_event("payment_intent.succeeded", {"id": "pi_missing"}))
        assert ack.status == "unprocessable"

    async def test_renewal_invoice_intent_is_ignored(self, session, products, deliver, make_event):
        ack = await deliver(
            make_event("payment_intent.succeeded", {"id": "pi_renewal", "invoice": "in_1"})
        )
        assert ack.status == "ignored"
        assert await WebhookEventRepository(session).list_unprocessed() == []


class TestSubscriptionCheckoutPayments:
    """Subscription-mode checkouts are keyed by session id; their intents and charges are not."""

    async def test_unpaid_checkout_completed_by_first_invoice(
        self, session, products, deliver, checkout_completed, make_event
    ):
        await deliver(checkout_completed(payment_status="unpaid", invoice="in_1"))

        ack = await deliver(
            make_event("payment_intent.succeeded", {"id": "pi_inv_1", "invoice": "in_1", "customer": "cus_test"})
        )

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "completed"
        assert await PaymentRepository(session).get_by_external_id("pi_inv_1") is None

    async def test_unpaid_checkout_matched_by_customer(
        self, session, products, deliver, checkout_completed, make_event
    ):
        await deliver(checkout_completed(payment_status="unpaid"))

        failed = await deliver(
            make_event("payment_intent.payment_failed", {"id": "pi_inv_1", "customer": "cus_test"})
        )
        succeeded = await deliver(
            make_event("payment_intent.succeeded", {"id": "pi_inv_1", "customer": "cus_test"})
        )

        assert failed.status == "processed"
        assert succeeded.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "completed"

    async def test_renewal_intent_leaves_checkout_row_alone(
        self, session, products, deliver, checkout_completed, make_event
    ):
        await deliver(checkout_completed(invoice="in_1"))

        ack = await deliver(
            make_event("payment_intent.payment_failed", {"id": "pi_renewal", "invoice": "in_2", "customer": "cus_test"})
        )

        assert ack.status == "ignored"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "completed"

    async def test_full_refund_of_subscription_checkout(
        self, session, products, deliver, checkout_completed, make_event
    ):
        await deliver(checkout_completed(invoice="in_1"))

        ack = await deliver(
            make_event(
                "charge.refunded",
                {
                    "id": "ch_1",
                    "payment_intent": "pi_inv_1",
                    "invoice": "in_1",
                    "customer": "cus_test",
                    "refunded": True,
                },
            )
        )

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "refunded"
        assert await WebhookEventRepository(session).list_unprocessed() == []

    async def test_refund_of_renewal_charge_is_queued(
        self, session, products, deliver, checkout_completed, make_event
    ):
        await deliver(checkout_completed(invoice="in_1"))

        ack = await deliver(
            make_event(
                "charge.refunded",
                {
                    "id": "ch_2",
                    "payment_intent": "pi_renewal",
                    "invoice": "in_2",
                    "customer": "cus_test",
                    "refunded": True,
                },
            )
        )

        assert ack.status == "unprocessable"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "completed"

    async def test_async_payment_succeeded_grants_access(
        self, session, products, deliver, checkout_completed, make_event
    ):
        now = int(time.time())
        await deliver(checkout_completed(payment_status="unpaid", created=now - 600))

        ack = await deliver(
            make_event(
                "checkout.session.async_payment_succeeded",
                {"id": "cs_test_123", "object": "checkout.session", "payment_status": "paid"},
                created=now,
            )
        )

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "completed"
        entitlement = await entitlement_for(session, products["country_basic"])
        assert entitlement.is_active is True
        assert entitlement.expires_at == add_billing_period(at(now), BillingCycle.YEARLY)

    async def test_async_payment_failed(self, session, products, deliver, checkout_completed, make_event):
        await deliver(checkout_completed(payment_status="unpaid"))

        ack = await deliver(
            make_event("checkout.session.async_payment_failed", {"id": "cs_test_123", "payment_status": "unpaid"})
        )

        assert ack.status == "processed"
        assert (await PaymentRepository(session).get_by_external_id("cs_test_123")).status == "failed"
        assert await entitlement_for(session, products["country_basic"]) is None

    async def test_async_payment_before_checkout_is_queued(self, session, products, deliver, make_event):
        ack = await deliver(make_event("checkout.session.async_payment_succeeded", {"id": "cs_unknown"}))
        assert ack.status == "unprocessable"


class TestEnvelope:

    async def test_unknown_type_is_ignored_and_marked(self, session, deliver, make_event):
        event = make_event("customer.created", {"id": "cus_1"})

        assert (await deliver(event)).status == "ignored"
        assert await WebhookEventRepository(session).is_processed(event["id"])
        assert (await deliver(event)).status == "already_processed"

    async def test_missing_id_is_rejected(self, session):
        with pytest.raises(WebhookVerificationError):
            await WebhookProcessor(session).process({"type": "checkout.session.completed"})
