"""
Repository Layer for Membership Billing

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.db.repositories.account_repository import (
    AccountRepository,
    normalize_email,
)
from app.infrastructure.db.repositories.product_repository import ProductRepository
from app.infrastructure.db.repositories.gift_code_repository import (
    GiftCodeRepository,
    RedemptionOutcome,
)
from app.infrastructure.db.repositories.payment_repository import PaymentRepository
from app.infrastructure.db.repositories.entitlement_repository import (
    EntitlementRepository,
)
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "AccountRepository",
    "ProductRepository",
    "GiftCodeRepository",
    "PaymentRepository",
    "EntitlementRepository",
    "WebhookEventRepository",
    # Helpers
    "RedemptionOutcome",
    "normalize_email",
]
