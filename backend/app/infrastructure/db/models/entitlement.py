"""
Entitlement Database Model

The single source of truth for "who currently has access to what".
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel, utc_now


class EntitlementModel(BaseModel, table=True):
    """
    Entitlement table.

    At most one row per (account, product). Rows are never deleted;
    cancellation only clears is_active.
    """

    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("account_id", "product_id", name="uq_entitlements_account_product"),
    )

    account_id: UUID = Field(foreign_key="accounts.id", index=True, nullable=False)
    product_id: UUID = Field(foreign_key="products.id", index=True, nullable=False)
    package_code: str = Field(max_length=64)

    is_active: bool = Field(default=True)
    started_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Gateway time of the event that last set is_active
    status_event_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
