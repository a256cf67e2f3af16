"""
Product Catalog

Immutable snapshot of the purchasable packages, built per request from the
products table and passed into the checkout builder and webhook processor.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from app.domain.membership import BillingCycle, Product
from app.infrastructure.exceptions import CatalogNotSynchronized, ProductUnavailable


@dataclass(frozen=True)
class Catalog:
    """Read-only view of products keyed by their stable code."""

    products: Mapping[str, Product] = field(default_factory=dict)

    @classmethod
    def from_products(cls, products: Iterable[Product]) -> "Catalog":
        return cls(products=MappingProxyType({p.code: p for p in products}))

    def __contains__(self, code: str) -> bool:
        return code in self.products

    def __len__(self) -> int:
        return len(self.products)

    def get(self, code: str) -> Optional[Product]:
        return self.products.get(code)

    def require_active(self, code: str) -> Product:
        """Product by code, raising ProductUnavailable if missing or inactive."""
        product = self.products.get(code)
        if product is None or not product.is_active:
            raise ProductUnavailable(code)
        return product

    def active_products(self) -> list[Product]:
        return [p for p in self.products.values() if p.is_active]

    @staticmethod
    def price_for(product: Product, cycle: BillingCycle) -> Decimal:
        """List price in major currency units."""
        if cycle is BillingCycle.YEARLY:
            return product.price_yearly
        return product.price_monthly

    @staticmethod
    def gateway_price_id(product: Product, cycle: BillingCycle) -> str:
        """Synchronized Stripe price id, or CatalogNotSynchronized."""
        if cycle is BillingCycle.YEARLY:
            price_id = product.stripe_price_yearly_id
        else:
            price_id = product.stripe_price_monthly_id

        if not product.stripe_product_id or not price_id:
            raise CatalogNotSynchronized(product.code, cycle.value)
        return price_id


def to_minor_units(amount: Decimal) -> int:
    """Major units (328.00) to the integer minor units Stripe expects (32800)."""
    return int((amount * 100).to_integral_value())


# Packages created by scripts.seed_products (code, name, monthly, yearly)
DEFAULT_PACKAGES = (
    ("country_basic", "Country Membership Basic", Decimal("39"), Decimal("328")),
    ("country_plus", "Country Membership Plus", Decimal("59"), Decimal("496")),
    ("worldwide_basic", "World Wide Membership Basic", Decimal("49"), Decimal("412")),
    ("worldwide_plus", "World Wide Membership Plus", Decimal("69"), Decimal("580")),
)
