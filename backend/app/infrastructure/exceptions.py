"""
Custom Exceptions for the Membership Billing backend

Hierarchical exception classes for proper error handling across layers.

The taxonomy mirrors how each failure must be surfaced:
- user errors are returned synchronously to the checkout caller
- configuration errors alert an operator
- delivery errors reject a webhook outright
- reconciliation errors are acknowledged and queued for an operator
"""

from typing import Optional, Dict, Any


class MembershipError(Exception):
    """Base exception for all membership billing errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(MembershipError):
    """Raised when input validation fails."""
    pass


class DatabaseError(MembershipError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class DuplicateError(DatabaseError):
    """Raised when attempting to create a duplicate resource."""
    pass


# =============================================================================
# User Errors (checkout path)
# =============================================================================

class ProductUnavailable(MembershipError):
    """Raised when a package is missing or inactive."""

    def __init__(self, product_code: str):
        super().__init__(
            f"Product '{product_code}' is not available",
            details={"product_code": product_code},
        )
        self.product_code = product_code


class GiftCodeRejected(MembershipError):
    """
    Base class for gift code rejections.

    Subclasses set ``reason`` to a stable machine-readable code which is
    returned to the caller unchanged.
    """

    reason = "CodeRejected"

    def __init__(self, code: Optional[str], message: Optional[str] = None):
        super().__init__(
            message or f"Gift code {code!r} rejected: {self.reason}",
            details={"code": code, "reason": self.reason},
        )
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class CodeNotFound(GiftCodeRejected):
    reason = "CodeNotFound"


class CodeNotYetValid(GiftCodeRejected):
    reason = "CodeNotYetValid"


class CodeExpired(GiftCodeRejected):
    reason = "CodeExpired"


class CodeExhausted(GiftCodeRejected):
    reason = "CodeExhausted"


class CodeWrongProduct(GiftCodeRejected):
    reason = "CodeWrongProduct"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(MembershipError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)


class CatalogNotSynchronized(ConfigurationError):
    """Raised when a product has no gateway price for the requested cycle."""

    def __init__(self, product_code: str, billing_cycle: str):
        super().__init__(
            f"Product '{product_code}' has no synchronized {billing_cycle} price; "
            "run the catalog synchronization"
        )
        self.details.update(
            {"product_code": product_code, "billing_cycle": billing_cycle}
        )


# =============================================================================
# Gateway / Webhook Errors
# =============================================================================

class PaymentGatewayError(MembershipError):
    """Raised when a Stripe API call fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class WebhookVerificationError(MembershipError):
    """Raised when a webhook payload or signature cannot be verified."""
    pass


class ReconciliationError(MembershipError):
    """
    Raised when a verified event cannot be applied (unknown product,
    malformed metadata, no ledger row to attach to).

    The event is acknowledged and placed on the operator queue rather than
    retried by the gateway.
    """
    pass
