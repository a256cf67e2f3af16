"""
API Dependencies

FastAPI dependency injection for admin authentication and gateway services.

Admin endpoints (catalog sync, gift codes, operator queue) are protected by
a shared API key sent in the X-Admin-Key header.
"""

import logging
import secrets

from fastapi import Header, HTTPException, status

from app.config.settings import get_settings
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service


logger = logging.getLogger(__name__)


async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.

    The admin key is set in the ADMIN_API_KEY environment variable.

    Raises:
        HTTPException 503: no admin key configured
        HTTPException 403: key does not match
    """
    expected_key = get_settings().admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


def get_payment_gateway() -> StripeService:
    """Stripe service provider, overridable in tests."""
    return get_stripe_service()
