"""
SQLModel ORM Models for the Membership Billing backend

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    BaseModel,
    TimestampMixin,
    UUIDMixin,
)
from app.infrastructure.db.models.account import AccountModel
from app.infrastructure.db.models.product import ProductModel
from app.infrastructure.db.models.gift_code import GiftCodeModel, GiftCodeUsageModel
from app.infrastructure.db.models.entitlement import EntitlementModel
from app.infrastructure.db.models.payment import PaymentModel
from app.infrastructure.db.models.webhook_event import (
    ProcessedWebhookEventModel,
    UnprocessedWebhookEventModel,
)


__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    # Catalog
    "ProductModel",
    "GiftCodeModel",
    "GiftCodeUsageModel",
    # Accounts and access
    "AccountModel",
    "EntitlementModel",
    # Ledger
    "PaymentModel",
    # Webhooks
    "ProcessedWebhookEventModel",
    "UnprocessedWebhookEventModel",
]
