"""
Membership Domain Models

Domain models for membership purchases following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context.
"""

import calendar
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BillingCycle(str, Enum):
    """Billing cycle for a membership package."""
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def interval(self) -> str:
        """Stripe recurring interval for this cycle."""
        return "year" if self is BillingCycle.YEARLY else "month"


class DiscountKind(str, Enum):
    """Kind of discount a gift code grants."""
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_ACCESS = "free_access"


class PaymentStatus(str, Enum):
    """Payment ledger status. Rows only ever move forward."""
    PENDING = "pending"
    FAILED = "failed"
    COMPLETED = "completed"
    REFUNDED = "refunded"


# pending -> failed -> completed -> refunded
PAYMENT_STATUS_ORDER = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.FAILED: 1,
    PaymentStatus.COMPLETED: 2,
    PaymentStatus.REFUNDED: 3,
}


def statuses_preceding(target: PaymentStatus) -> list[PaymentStatus]:
    """Statuses from which ``target`` is a forward move."""
    rank = PAYMENT_STATUS_ORDER[target]
    return [s for s, r in PAYMENT_STATUS_ORDER.items() if r < rank]


class TransitionOutcome(str, Enum):
    """Result of a conditional ledger transition."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


class WebhookOutcome(str, Enum):
    """How a webhook delivery was resolved."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"
    UNPROCESSABLE = "unprocessable"


def add_billing_period(start: datetime, cycle: BillingCycle) -> datetime:
    """
    Add one calendar month or year to ``start``.

    The day is clamped to the length of the target month, so Jan 31 + 1 month
    is Feb 28/29 and Feb 29 + 1 year is Feb 28.
    """
    if cycle is BillingCycle.YEARLY:
        year, month = start.year + 1, start.month
    else:
        year = start.year + (start.month // 12)
        month = start.month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# =============================================================================
# Domain Entities
# =============================================================================

class Product(BaseModel):
    """Purchasable membership package."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: Optional[str] = None
    price_monthly: Decimal
    price_yearly: Decimal
    currency: str = "DKK"
    is_active: bool = True
    stripe_product_id: Optional[str] = None
    stripe_price_monthly_id: Optional[str] = None
    stripe_price_yearly_id: Optional[str] = None


class GiftCode(BaseModel):
    """Discount or free-access code with a usage cap and validity window."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    kind: DiscountKind
    discount_percentage: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    product_code: Optional[str] = None
    valid_from: datetime
    valid_to: Optional[datetime] = None
    usage_limit: int = 1
    used_count: int = 0
    is_active: bool = True

    @field_validator("valid_from", "valid_to")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Entitlement(BaseModel):
    """Durable record that an account has (or had) access to a product."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    product_id: UUID
    package_code: str
    is_active: bool
    started_at: datetime
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("started_at", "expires_at", "updated_at")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def grants_access(self, now: Optional[datetime] = None) -> bool:
        """Active and not past its expiry."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CheckoutRequest(BaseModel):
    """Request DTO for creating a checkout session."""
    package_type: str = Field(..., min_length=1, description="Product code to purchase")
    billing_cycle: BillingCycle = Field(..., description="monthly or yearly")
    email: EmailStr = Field(..., description="Purchaser email")
    gift_code_id: Optional[str] = Field(
        default=None,
        description="Gift code id or code string",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Attribution metadata (customer_name, relation_to_product, ...)",
    )
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    """Response DTO for checkout session creation."""
    session_id: str
    url: str


class PriceQuote(BaseModel):
    """Price of one purchase after an optional discount (major units)."""
    base_price: Decimal
    discount: Decimal = Decimal("0")
    final_price: Decimal

    @property
    def is_discounted(self) -> bool:
        return self.discount > 0


class CheckoutStatusResponse(BaseModel):
    """Response DTO for the post-redirect confirmation view."""
    session_id: str
    status: str = Field(description="completed, failed, refunded or processing")
    package_type: Optional[str] = None
    product_name: Optional[str] = None
    expires_at: Optional[datetime] = None


class EntitlementResponse(BaseModel):
    """Response DTO for a single entitlement."""
    product_id: UUID
    package_code: str
    is_active: bool
    started_at: datetime
    expires_at: Optional[datetime] = None


class AccessCheckResponse(BaseModel):
    """Response DTO for access checks."""
    account_id: UUID
    product_code: str
    has_access: bool


class GiftCodeCreate(BaseModel):
    """Request DTO for creating a gift code."""
    code: str = Field(..., min_length=3, max_length=64)
    kind: DiscountKind
    discount_percentage: Optional[Decimal] = Field(default=None, gt=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, gt=0)
    product_code: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    usage_limit: int = Field(default=1, ge=1)

    @field_validator("code")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "GiftCodeCreate":
        """Each kind requires its own magnitude field."""
        if self.kind is DiscountKind.PERCENTAGE and self.discount_percentage is None:
            raise ValueError("percentage codes require discount_percentage")
        if self.kind is DiscountKind.FIXED_AMOUNT and self.discount_amount is None:
            raise ValueError("fixed_amount codes require discount_amount")
        if self.product_code and self.kind is not DiscountKind.FREE_ACCESS:
            raise ValueError("product_code restricts free_access codes only")
        if self.valid_from and self.valid_to and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


class GiftCodeUpdate(BaseModel):
    """Request DTO for toggling a gift code."""
    is_active: bool


class GiftCodeRead(GiftCode):
    """Response DTO for gift codes."""
    created_at: Optional[datetime] = None


class CatalogSyncItem(BaseModel):
    """Outcome of synchronizing one product."""
    code: str
    action: str = Field(description="created, updated or error")
    stripe_product_id: Optional[str] = None
    stripe_price_monthly_id: Optional[str] = None
    stripe_price_yearly_id: Optional[str] = None
    error: Optional[str] = None


class CatalogSyncResult(BaseModel):
    """Response DTO for a catalog synchronization run."""
    success: bool
    message: str
    results: list[CatalogSyncItem]


class UnprocessedEventRead(BaseModel):
    """Operator view of a queued webhook event."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    event_type: str
    reason: str
    attempts: int
    created_at: datetime
    resolved_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    """Response body returned to the gateway."""
    status: str
    event_id: Optional[str] = None
    detail: Optional[str] = None
