"""
Checkout Service

Prices a membership purchase and hands off to a Stripe hosted checkout.

Every failure here happens before the gateway session is requested, so a
rejected purchase leaves no state behind. Entitlements are never touched on
this path; completion is learned from the webhook processor.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import get_settings
from app.domain.catalog import Catalog
from app.domain.gift_codes import percent_off_equivalent, quote_price, validate_gift_code
from app.domain.membership import CheckoutRequest, CheckoutResponse, GiftCode, utcnow
from app.infrastructure.db.repositories.gift_code_repository import GiftCodeRepository
from app.infrastructure.db.repositories.product_repository import ProductRepository
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service


logger = logging.getLogger(__name__)

# Stripe metadata limits
MAX_METADATA_KEYS = 50
MAX_METADATA_VALUE_LENGTH = 500

# Keys written by the builder; attribution metadata cannot override them
RESERVED_METADATA_KEYS = (
    "product_code",
    "billing_cycle",
    "gift_code_id",
    "gift_code",
    "original_amount",
    "discount_amount",
    "final_amount",
    "currency",
)


def attribution_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    """Caller metadata flattened to the string map Stripe accepts."""
    cleaned: dict[str, str] = {}
    for key, value in metadata.items():
        if value is None or key in RESERVED_METADATA_KEYS:
            continue
        cleaned[str(key)[:40]] = str(value)[:MAX_METADATA_VALUE_LENGTH]
    room = MAX_METADATA_KEYS - len(RESERVED_METADATA_KEYS) - 1
    return dict(list(cleaned.items())[:room])


class CheckoutService:
    """
    Checkout Session Builder.

    Works against an explicit Catalog snapshot rather than shared price maps.
    """

    def __init__(
        self,
        session: AsyncSession,
        stripe_service: Optional[StripeService] = None,
    ):
        self._products = ProductRepository(session)
        self._gift_codes = GiftCodeRepository(session)
        self._stripe = stripe_service or get_stripe_service()

    async def create_session(
        self,
        request: CheckoutRequest,
        origin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CheckoutResponse:
        """Load the current catalog and build a session from it."""
        catalog = await self._products.load_catalog()
        return await self.build_session(catalog, request, origin=origin, now=now)

    async def build_session(
        self,
        catalog: Catalog,
        request: CheckoutRequest,
        origin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CheckoutResponse:
        """
        Create a hosted checkout session for one purchase.

        Args:
            catalog: Product snapshot to price against
            request: Package, cycle, email, optional gift code, attribution
            origin: Request origin used for the redirect URLs
            now: Current time (defaults to UTC now)

        Returns:
            CheckoutResponse with the session id and redirect URL

        Raises:
            ProductUnavailable: Package missing or inactive
            GiftCodeRejected: Any gift code rejection, with its reason
            CatalogNotSynchronized: No Stripe price for the package and cycle
            PaymentGatewayError: Stripe call failed
        """
        now = now or utcnow()
        cycle = request.billing_cycle

        product = catalog.require_active(request.package_type)

        gift_code: Optional[GiftCode] = None
        if request.gift_code_id:
            record = await self._gift_codes.find(request.gift_code_id)
            gift_code = validate_gift_code(
                record, product.code, now, code=request.gift_code_id
            )

        quote = quote_price(Catalog.price_for(product, cycle), gift_code)
        price_id = Catalog.gateway_price_id(product, cycle)

        coupon_id = None
        if gift_code is not None and quote.is_discounted:
            coupon = await self._stripe.get_or_create_coupon(
                gift_code.code, percent_off_equivalent(quote)
            )
            coupon_id = coupon.id

        metadata = attribution_metadata(request.metadata)
        metadata.update(
            {
                "product_code": product.code,
                "billing_cycle": cycle.value,
                "gift_code_id": str(gift_code.id) if gift_code else "",
                "gift_code": gift_code.code if gift_code else "",
                "original_amount": str(quote.base_price),
                "discount_amount": str(quote.discount),
                "final_amount": str(quote.final_price),
                "currency": product.currency,
            }
        )
        subscription_metadata = {
            "product_code": product.code,
            "billing_cycle": cycle.value,
            "customer_email": str(request.email),
        }

        base_url = (origin or get_settings().frontend_url).rstrip("/")
        success_url = request.success_url or f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = request.cancel_url or f"{base_url}/pricing"

        session = await self._stripe.create_checkout_session(
            price_id=price_id,
            customer_email=str(request.email),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_metadata=subscription_metadata,
            coupon_id=coupon_id,
        )

        logger.info(
            f"Checkout {session.id}: {product.code}/{cycle.value} "
            f"base={quote.base_price} discount={quote.discount} final={quote.final_price}"
        )
        return CheckoutResponse(session_id=session.id, url=session.url)
