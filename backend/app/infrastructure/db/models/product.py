"""
Product Database Model

Membership packages and the Stripe identifiers written back by the
catalog synchronizer.
"""

from decimal import Decimal
from typing import Optional

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class ProductModel(BaseModel, table=True):
    """
    Product table.

    Maps to the 'products' table. Prices are stored in major currency units.
    """

    __tablename__ = "products"

    code: str = Field(max_length=64, unique=True, index=True, nullable=False)
    name: str = Field(max_length=200)
    description: Optional[str] = Field(default=None)

    # Pricing
    price_monthly: Decimal = Field(max_digits=10, decimal_places=2)
    price_yearly: Decimal = Field(max_digits=10, decimal_places=2)
    currency: str = Field(default="DKK", max_length=3)
    is_active: bool = Field(default=True, index=True)

    # Stripe IDs (null until synchronized)
    stripe_product_id: Optional[str] = Field(default=None, max_length=255)
    stripe_price_monthly_id: Optional[str] = Field(default=None, max_length=255)
    stripe_price_yearly_id: Optional[str] = Field(default=None, max_length=255)
