"""
Payment Database Model

Append-only payments ledger. external_payment_id is the idempotency key
for checkout reconciliation.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class PaymentModel(BaseModel, table=True):
    """Maps to the 'payments' table."""

    __tablename__ = "payments"

    account_id: UUID = Field(foreign_key="accounts.id", index=True, nullable=False)
    product_id: UUID = Field(foreign_key="products.id", index=True, nullable=False)

    # Stripe correlation IDs
    external_payment_id: str = Field(max_length=255, unique=True, index=True, nullable=False)
    stripe_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_session_id: Optional[str] = Field(default=None, max_length=255, index=True)
    stripe_invoice_id: Optional[str] = Field(default=None, max_length=255, index=True)

    # Amounts (major units)
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    currency: str = Field(default="DKK", max_length=3)
    original_amount: Decimal = Field(max_digits=10, decimal_places=2)
    discount_amount: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)

    status: str = Field(default="pending", max_length=20, index=True)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    gift_code_id: Optional[UUID] = Field(default=None, foreign_key="gift_codes.id")
    billing_cycle: str = Field(default="monthly", max_length=20)
