"""
Test configuration and fixtures for Membership Billing.

Provides shared fixtures for unit and integration tests:
- a fresh SQLite database per test (aiosqlite)
- seeded, synchronized products
- a mocked Stripe gateway
- builders for Stripe event payloads
"""

import os

# Settings are read once at import; configure the test environment first.
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("CONFIRMATION_WAIT_SECONDS", "0.2")
os.environ.setdefault("CONFIRMATION_POLL_INTERVAL_SECONDS", "0.05")

import itertools
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from app.domain.catalog import DEFAULT_PACKAGES
from app.domain.membership import DiscountKind, GiftCodeCreate
from app.infrastructure.db.database import get_db_manager
from app.infrastructure.db.repositories.gift_code_repository import GiftCodeRepository
from app.infrastructure.db.repositories.product_repository import ProductRepository


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def db_manager(tmp_path):
    """DatabaseManager pointed at a throwaway SQLite file."""
    manager = get_db_manager()
    manager.configure(f"sqlite+aiosqlite:///{tmp_path / 'membership.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
async def session(db_manager):
    """Async session on the test database."""
    async with db_manager.session_factory() as session:
        yield session


@pytest.fixture
async def products(session):
    """Default packages with Stripe ids, keyed by code."""
    repo = ProductRepository(session)
    seeded = {}
    for code, name, monthly, yearly in DEFAULT_PACKAGES:
        product = await repo.upsert_by_code(
            code=code,
            name=name,
            price_monthly=monthly,
            price_yearly=yearly,
            currency="DKK",
        )
        await repo.set_gateway_ids(
            product.id,
            stripe_product_id=f"prod_{code}",
            stripe_price_monthly_id=f"price_{code}_month",
            stripe_price_yearly_id=f"price_{code}_year",
        )
        seeded[code] = await repo.get_by_code(code)
    await session.commit()
    return seeded


@pytest.fixture
def create_gift_code(session):
    """Create and commit a gift code."""
    async def _create(code: str = "SUMMER25", **overrides):
        data = {
            "code": code,
            "kind": DiscountKind.PERCENTAGE,
            "discount_percentage": Decimal("20"),
            "usage_limit": 1,
            "valid_from": datetime.now(timezone.utc) - timedelta(days=1),
        }
        data.update(overrides)
        model = await GiftCodeRepository(session).create(GiftCodeCreate(**data))
        await session.commit()
        return model

    return _create


# =============================================================================
# Stripe Fixtures
# =============================================================================

@pytest.fixture
def mock_stripe_service():
    """Mock for StripeService."""
    mock = MagicMock()
    mock.create_checkout_session = AsyncMock(
        return_value=MagicMock(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")
    )
    mock.get_or_create_coupon = AsyncMock(side_effect=lambda code, pct: MagicMock(id=f"giftcode-{code}-{pct}"))
    mock.find_product_by_code = AsyncMock(return_value=None)
    mock.create_product = AsyncMock(side_effect=lambda code, **kw: MagicMock(id=f"prod_{code}"))
    mock.update_product = AsyncMock(side_effect=lambda product_id, **kw: MagicMock(id=product_id))
    mock.list_active_prices = AsyncMock(return_value=[])
    mock.create_price = AsyncMock(
        side_effect=lambda product_id, unit_amount, currency, interval, metadata=None: MagicMock(
            id=f"price_{product_id}_{interval}_{unit_amount}"
        )
    )
    mock.verify_webhook_signature = MagicMock(return_value={})
    return mock


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(mock_stripe_service):
    """FastAPI application with the Stripe gateway mocked."""
    from app.api.dependencies import get_payment_gateway
    from app.main import app

    app.dependency_overrides[get_payment_gateway] = lambda: mock_stripe_service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app, db_manager) -> AsyncGenerator[AsyncClient, None]:
    """Async test client sharing the test database."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# Stripe Event Builders
# =============================================================================

_event_ids = itertools.count(1)


@pytest.fixture
def make_event():
    """Build a Stripe event envelope."""
    def _make(event_type: str, obj: dict, event_id: str = None, created: int = None) -> dict:
        return {
            "id": event_id or f"evt_test_{next(_event_ids)}",
            "object": "event",
            "type": event_type,
            "created": created if created is not None else int(time.time()),
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def checkout_completed(make_event):
    """Build a checkout.session.completed event."""
    def _make(
        session_id: str = "cs_test_123",
        payment_intent: str = None,
        email: str = "buyer@example.com",
        product_code: str = "country_basic",
        billing_cycle: str = "yearly",
        original_amount: str = "328.00",
        discount_amount: str = "0",
        amount_total: int = 32800,
        gift_code_id: str = "",
        customer: str = "cus_test",
        subscription: str = "sub_test",
        payment_status: str = "paid",
        invoice: str = None,
        **event_kwargs,
    ) -> dict:
        obj = {
            "id": session_id,
            "object": "checkout.session",
            "mode": "subscription",
            "payment_intent": payment_intent,
            "payment_status": payment_status,
            "amount_total": amount_total,
            "currency": "dkk",
            "customer": customer,
            "subscription": subscription,
            "invoice": invoice,
            "customer_details": {"email": email},
            "payment_method_types": ["card"],
            "metadata": {
                "product_code": product_code,
                "billing_cycle": billing_cycle,
                "gift_code_id": gift_code_id,
                "original_amount": original_amount,
                "discount_amount": discount_amount,
                "customer_name": "Test Buyer",
                "relation_to_product": "member",
            },
        }
        return make_event("checkout.session.completed", obj, **event_kwargs)

    return _make


@pytest.fixture
def subscription_event(make_event):
    """Build a customer.subscription.* event."""
    def _make(
        event_type: str = "customer.subscription.updated",
        subscription_id: str = "sub_test",
        customer: str = "cus_test",
        status: str = "active",
        current_period_end: int = None,
        metadata: dict = None,
        **event_kwargs,
    ) -> dict:
        obj = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_end": current_period_end,
            "metadata": metadata or {},
        }
        return make_event(event_type, obj, **event_kwargs)

    return _make
