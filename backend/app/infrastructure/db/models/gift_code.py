"""
Gift Code Database Models

Gift codes and their redemption rows.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, UUIDMixin, utc_now


class GiftCodeModel(BaseModel, table=True):
    """
    Gift code table.

    used_count never exceeds usage_limit; the CHECK constraint backs up the
    conditional increment in the repository.
    """

    __tablename__ = "gift_codes"
    __table_args__ = (
        CheckConstraint("used_count <= usage_limit", name="ck_gift_codes_usage_within_limit"),
        CheckConstraint("usage_limit >= 1", name="ck_gift_codes_usage_limit_positive"),
    )

    code: str = Field(max_length=64, unique=True, index=True, nullable=False)
    kind: str = Field(max_length=20)

    # Magnitude fields, depending on kind
    discount_percentage: Optional[Decimal] = Field(default=None, max_digits=5, decimal_places=2)
    discount_amount: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    product_code: Optional[str] = Field(default=None, max_length=64)

    # Validity window (valid_to null = unbounded)
    valid_from: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    valid_to: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    usage_limit: int = Field(default=1)
    used_count: int = Field(default=0)
    is_active: bool = Field(default=True)


class GiftCodeUsageModel(UUIDMixin, table=True):
    """One row per redemption, at most one per payment."""

    __tablename__ = "gift_code_usages"

    gift_code_id: UUID = Field(foreign_key="gift_codes.id", index=True, nullable=False)
    account_id: UUID = Field(foreign_key="accounts.id", index=True, nullable=False)
    payment_id: UUID = Field(foreign_key="payments.id", unique=True, nullable=False)
    used_at: datetime = Field(
        default_factory=utc_now,
        nullable=False,
        sa_type=DateTime(timezone=True),
    )
