"""
Catalog Synchronization Service

Pushes active products into Stripe and stores the resulting product and
price ids back on each product row.

Safe to re-run: the Stripe product is found through the product code kept in
its metadata, and a price is only created when no active price with the same
interval, amount and currency exists.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog import Catalog, to_minor_units
from app.domain.membership import BillingCycle, CatalogSyncItem, CatalogSyncResult, Product
from app.infrastructure.db.repositories.product_repository import ProductRepository
from app.infrastructure.exceptions import PaymentGatewayError
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service


logger = logging.getLogger(__name__)


def find_matching_price(
    prices: Iterable,
    interval: str,
    unit_amount: int,
    currency: str,
) -> Optional[str]:
    """Id of an active recurring price matching interval, amount and currency."""
    for price in prices:
        recurring = price.get("recurring") or {}
        if (
            recurring.get("interval") == interval
            and price.get("unit_amount") == unit_amount
            and (price.get("currency") or "").lower() == currency.lower()
        ):
            return price["id"]
    return None


class CatalogSyncService:
    """Catalog Synchronizer."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_service: Optional[StripeService] = None,
    ):
        self._products = ProductRepository(session)
        self._stripe = stripe_service or get_stripe_service()

    async def sync_all(self) -> CatalogSyncResult:
        """
        Synchronize every active product.

        A failure on one product is recorded in its result row and the batch
        continues with the next product.
        """
        products = [Product.model_validate(p) for p in await self._products.list_active()]
        results: list[CatalogSyncItem] = []

        for product in products:
            try:
                results.append(await self.sync_product(product))
            except PaymentGatewayError as e:
                logger.error(f"Catalog sync failed for {product.code}: {e.message}")
                results.append(CatalogSyncItem(code=product.code, action="error", error=e.message))

        errors = sum(1 for r in results if r.action == "error")
        message = f"Synchronized {len(results) - errors} of {len(results)} products"
        logger.info(message)
        return CatalogSyncResult(success=errors == 0, message=message, results=results)

    async def sync_product(self, product: Product) -> CatalogSyncItem:
        """Find-or-create the Stripe product and its monthly and yearly prices."""
        existing = await self._stripe.find_product_by_code(product.code)
        if existing is not None:
            stripe_product = await self._stripe.update_product(
                existing.id,
                name=product.name,
                description=product.description,
                active=product.is_active,
            )
            action = "updated"
        else:
            stripe_product = await self._stripe.create_product(
                product.code,
                name=product.name,
                description=product.description,
            )
            action = "created"

        prices = await self._stripe.list_active_prices(stripe_product.id)
        price_ids = {}
        for cycle in BillingCycle:
            price_ids[cycle] = await self._ensure_price(
                product, stripe_product.id, cycle, prices
            )

        await self._products.set_gateway_ids(
            product.id,
            stripe_product_id=stripe_product.id,
            stripe_price_monthly_id=price_ids[BillingCycle.MONTHLY],
            stripe_price_yearly_id=price_ids[BillingCycle.YEARLY],
        )
        logger.info(f"Catalog sync {action} {product.code} -> {stripe_product.id}")

        return CatalogSyncItem(
            code=product.code,
            action=action,
            stripe_product_id=stripe_product.id,
            stripe_price_monthly_id=price_ids[BillingCycle.MONTHLY],
            stripe_price_yearly_id=price_ids[BillingCycle.YEARLY],
        )

    async def _ensure_price(
        self,
        product: Product,
        stripe_product_id: str,
        cycle: BillingCycle,
        prices: list,
    ) -> str:
        unit_amount = to_minor_units(Catalog.price_for(product, cycle))
        price_id = find_matching_price(prices, cycle.interval, unit_amount, product.currency)
        if price_id:
            return price_id

        price = await self._stripe.create_price(
            stripe_product_id,
            unit_amount=unit_amount,
            currency=product.currency,
            interval=cycle.interval,
            metadata={"product_code": product.code, "billing_cycle": cycle.value},
        )
        return price.id
