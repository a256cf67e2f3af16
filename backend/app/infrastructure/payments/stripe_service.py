"""
Stripe Payment Service

Clean Architecture infrastructure service for Stripe payment processing.
Handles hosted checkout sessions, catalog objects (products, prices,
coupons) and webhook signature verification.

Gateway objects are always looked up by a deterministic key before being
created, so every call here is safe to repeat.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.infrastructure.exceptions import (
    ConfigurationError,
    PaymentGatewayError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)


def coupon_id_for(code: str, percent_off: Decimal) -> str:
    """Stable coupon id for a gift code at a given percentage."""
    pct = format(percent_off.normalize(), "f").replace(".", "_")
    return f"giftcode-{code.upper()}-{pct}"


class StripeService:
    """
    Stripe payment processing service.

    Wraps every SDK failure in PaymentGatewayError so callers deal with a
    single exception type.
    """

    def __init__(self):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.api_version = settings.stripe_api_version

    def _require_api_key(self) -> None:
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

    # =========================================================================
    # Catalog: Products
    # =========================================================================

    async def find_product_by_code(self, product_code: str) -> Optional[stripe.Product]:
        """
        Find the gateway product tagged with our product code.

        Args:
            product_code: Stable product code stored in the product metadata

        Returns:
            stripe.Product or None if no product carries the code
        """
        self._require_api_key()
        try:
            result = stripe.Product.search(
                query=f"metadata['product_code']:'{product_code}'",
                limit=1,
            )
        except StripeError as e:
            logger.error(f"Failed to search Stripe products for {product_code}: {e}")
            raise PaymentGatewayError(
                f"Failed to search products: {e.user_message or e}",
                operation="product.search",
                original_error=e,
            )
        return result.data[0] if result.data else None

    async def create_product(
        self,
        product_code: str,
        name: str,
        description: Optional[str] = None,
    ) -> stripe.Product:
        self._require_api_key()
        params: dict[str, Any] = {
            "name": name,
            "metadata": {"product_code": product_code},
        }
        if description:
            params["description"] = description

        try:
            product = stripe.Product.create(**params)
        except StripeError as e:
            logger.error(f"Failed to create Stripe product {product_code}: {e}")
            raise PaymentGatewayError(
                f"Failed to create product: {e.user_message or e}",
                operation="product.create",
                original_error=e,
            )
        logger.info(f"Created Stripe product {product.id} for {product_code}")
        return product

    async def update_product(
        self,
        stripe_product_id: str,
        name: str,
        description: Optional[str] = None,
        active: bool = True,
    ) -> stripe.Product:
        self._require_api_key()
        params: dict[str, Any] = {"name": name, "active": active}
        if description:
            params["description"] = description

        try:
            return stripe.Product.modify(stripe_product_id, **params)
        except StripeError as e:
            logger.error(f"Failed to update Stripe product {stripe_product_id}: {e}")
            raise PaymentGatewayError(
                f"Failed to update product: {e.user_message or e}",
                operation="product.modify",
                original_error=e,
            )

    # =========================================================================
    # Catalog: Prices
    # =========================================================================

    async def list_active_prices(self, stripe_product_id: str) -> list[stripe.Price]:
        self._require_api_key()
        try:
            result = stripe.Price.list(
                product=stripe_product_id,
                active=True,
                limit=100,
            )
        except StripeError as e:
            logger.error(f"Failed to list prices for {stripe_product_id}: {e}")
            raise PaymentGatewayError(
                f"Failed to list prices: {e.user_message or e}",
                operation="price.list",
                original_error=e,
            )
        return list(result.data)

    async def create_price(
        self,
        stripe_product_id: str,
        unit_amount: int,
        currency: str,
        interval: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> stripe.Price:
        """
        Create a recurring price.

        Args:
            stripe_product_id: Product the price belongs to
            unit_amount: Amount in minor units (øre, cents)
            currency: ISO currency code
            interval: "month" or "year"
            metadata: Tags stored on the price
        """
        self._require_api_key()
        try:
            price = stripe.Price.create(
                product=stripe_product_id,
                unit_amount=unit_amount,
                currency=currency.lower(),
                recurring={"interval": interval},
                metadata=metadata or {},
            )
        except StripeError as e:
            logger.error(f"Failed to create {interval} price for {stripe_product_id}: {e}")
            raise PaymentGatewayError(
                f"Failed to create price: {e.user_message or e}",
                operation="price.create",
                original_error=e,
            )
        logger.info(f"Created Stripe price {price.id} ({interval}, {unit_amount} {currency})")
        return price

    # =========================================================================
    # Coupons
    # =========================================================================

    async def get_or_create_coupon(
        self,
        code: str,
        percent_off: Decimal,
    ) -> stripe.Coupon:
        """
        Reuse the coupon for a gift code, creating it on first use.

        Args:
            code: Gift code string (names the coupon)
            percent_off: Percentage off the list price; 100 is a full waiver
        """
        self._require_api_key()
        coupon_id = coupon_id_for(code, percent_off)

        try:
            return stripe.Coupon.retrieve(coupon_id)
        except stripe.InvalidRequestError as e:
            if e.code != "resource_missing":
                logger.error(f"Failed to retrieve coupon {coupon_id}: {e}")
                raise PaymentGatewayError(
                    f"Failed to retrieve coupon: {e.user_message or e}",
                    operation="coupon.retrieve",
                    original_error=e,
                )
        except StripeError as e:
            logger.error(f"Failed to retrieve coupon {coupon_id}: {e}")
            raise PaymentGatewayError(
                f"Failed to retrieve coupon: {e.user_message or e}",
                operation="coupon.retrieve",
                original_error=e,
            )

        try:
            coupon = stripe.Coupon.create(
                id=coupon_id,
                percent_off=float(percent_off),
                duration="once",
                name=f"Gift code {code.upper()}",
            )
        except StripeError as e:
            logger.error(f"Failed to create coupon {coupon_id}: {e}")
            raise PaymentGatewayError(
                f"Failed to create coupon: {e.user_message or e}",
                operation="coupon.create",
                original_error=e,
            )
        logger.info(f"Created Stripe coupon {coupon_id} ({percent_off}% off)")
        return coupon

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        price_id: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        subscription_metadata: Optional[dict[str, str]] = None,
        coupon_id: Optional[str] = None,
    ) -> stripe.checkout.Session:
        """
        Create a hosted Checkout Session for a membership subscription.

        Args:
            price_id: Synchronized Stripe price for the product and cycle
            customer_email: Purchaser email, prefilled on the hosted page
            success_url: Redirect after successful payment
            cancel_url: Redirect after cancelled payment
            metadata: Everything reconciliation needs, echoed back on the
                      checkout.session.completed event
            subscription_metadata: Tags copied onto the subscription
            coupon_id: Optional coupon applied to the first invoice

        Returns:
            stripe.checkout.Session with checkout URL
        """
        self._require_api_key()
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "customer_email": customer_email,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": subscription_metadata or {}},
        }
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        else:
            params["allow_promotion_codes"] = False

        try:
            session = stripe.checkout.Session.create(**params)
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise PaymentGatewayError(
                f"Failed to create checkout: {e.user_message or e}",
                operation="checkout.session.create",
                original_error=e,
            )

        logger.info(
            f"Created checkout session {session.id} for {customer_email}, "
            f"product={metadata.get('product_code')}, coupon={coupon_id}"
        )
        return session

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            stripe.Event if valid

        Raises:
            WebhookVerificationError if the secret is missing, the payload is
            malformed or the signature does not match
        """
        if not self._webhook_secret:
            raise WebhookVerificationError("Webhook secret is not configured")

        try:
            return stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}")


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
