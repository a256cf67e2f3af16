"""
Payments Infrastructure Module

Stripe checkout, catalog and webhook verification services.
"""

from app.infrastructure.payments.stripe_service import (
    StripeService,
    coupon_id_for,
    get_stripe_service,
)

__all__ = ["StripeService", "coupon_id_for", "get_stripe_service"]
