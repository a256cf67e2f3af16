"""
Integration Tests for Webhooks (Stripe)

Verifies:
- Signature verification failure (400)
- Successful event processing
- Idempotency (prevent double processing)
- Rollback and 500 on unexpected failures so Stripe redelivers
"""

import json

import pytest
from unittest.mock import AsyncMock, patch

from app.infrastructure.db.repositories import (
    EntitlementRepository,
    PaymentRepository,
    WebhookEventRepository,
)
from app.infrastructure.exceptions import WebhookVerificationError


SIGNATURE = {"stripe-signature": "t=1,v1=test"}


async def post_event(client, event, headers=SIGNATURE):
    return await client.post(
        "/api/webhooks/stripe",
        content=json.dumps(event),
        headers={"content-type": "application/json", **headers},
    )


class TestStripeWebhooks:

    @pytest.mark.asyncio
    async def test_webhook_missing_signature(self, async_client):
        """Webhook without signature header should fail 400."""
        response = await post_event(async_client, {"id": "evt_123"}, headers={})
        assert response.status_code == 400
        assert "Missing Stripe signature" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_webhook_invalid_signature(self, async_client, mock_stripe_service, session):
        """Webhook with invalid signature should fail 400 and write nothing."""
        mock_stripe_service.verify_webhook_signature.side_effect = WebhookVerificationError("Bad sig")

        response = await post_event(async_client, {"id": "evt_123", "type": "charge.refunded"})

        assert response.status_code == 400
        assert "Invalid signature" in response.json()["detail"]
        assert await WebhookEventRepository(session).is_processed("evt_123") is False

    @pytest.mark.asyncio
    async def test_webhook_malformed_envelope(self, async_client):
        """A verified body without an event id is rejected."""
        response = await post_event(async_client, {"type": "checkout.session.completed"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Malformed event"

    @pytest.mark.asyncio
    async def test_webhook_success_checkout(self, async_client, session, products, checkout_completed):
        """Valid checkout.session.completed event records payment and access."""
        event = checkout_completed(payment_intent="pi_http")

        response = await post_event(async_client, event)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["event_id"] == event["id"]

        payment = await PaymentRepository(session).get_by_external_id("pi_http")
        assert payment is not None
        active = await EntitlementRepository(session).list_active_entitlements(payment.account_id)
        assert [e.package_code for e in active] == ["country_basic"]

    @pytest.mark.asyncio
    async def test_webhook_idempotency(self, async_client, session, products, checkout_completed):
        """Already processed event should be skipped."""
        event = checkout_completed(payment_intent="pi_http")

        first = await post_event(async_client, event)
        second = await post_event(async_client, event)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        assert await PaymentRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_webhook_unhandled_event(self, async_client, make_event):
        """Unknown event types are acknowledged."""
        response = await post_event(async_client, make_event("invoice.created", {"id": "in_1"}))
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_webhook_unprocessable_event_is_acknowledged(self, async_client, session, products, checkout_completed):
        """Events that cannot be applied are queued and acknowledged with 200."""
        event = checkout_completed(product_code="retired_plan")

        response = await post_event(async_client, event)

        assert response.status_code == 200
        assert response.json()["status"] == "unprocessable"
        queued = await WebhookEventRepository(session).list_unprocessed()
        assert [q.event_id for q in queued] == [event["id"]]

    @pytest.mark.asyncio
    async def test_webhook_failure_returns_500(self, async_client, session, products, checkout_completed):
        """Unexpected failures roll back and return 500 so Stripe retries."""
        event = checkout_completed(payment_intent="pi_http")

        with patch(
            "app.api.routes.webhooks.WebhookProcessor.process",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database unavailable"),
        ):
            response = await post_event(async_client, event)

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"
        assert await WebhookEventRepository(session).is_processed(event["id"]) is False

        # The redelivery is processed normally
        retry = await post_event(async_client, event)
        assert retry.json()["status"] == "processed"
