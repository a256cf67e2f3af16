"""
Gift Code Pricing Rules

Pure validation and discount arithmetic for gift codes.
Nothing here touches the database: consumption of a code is recorded only
once the gateway confirms the purchase.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.domain.membership import DiscountKind, GiftCode, PriceQuote
from app.infrastructure.exceptions import (
    CodeExhausted,
    CodeExpired,
    CodeNotFound,
    CodeNotYetValid,
    CodeWrongProduct,
)


ZERO = Decimal("0")
HUNDRED = Decimal("100")


def round_half_up(value: Decimal) -> Decimal:
    """Round to whole currency units, halves away from zero."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def validate_gift_code(
    gift_code: Optional[GiftCode],
    product_code: str,
    now: datetime,
    code: Optional[str] = None,
) -> GiftCode:
    """
    Check that a gift code may be applied to a purchase.

    Checks run in a fixed order and stop at the first failure:
    existence/active, validity window, remaining uses, product restriction.

    Args:
        gift_code: The looked-up code record, or None if the lookup missed
        product_code: Package being purchased
        now: Current time (aware UTC)
        code: The code string as supplied, used in the rejection message

    Returns:
        The same gift code, for chaining into ``quote_price``

    Raises:
        CodeNotFound, CodeNotYetValid, CodeExpired, CodeExhausted,
        CodeWrongProduct
    """
    supplied = code or (gift_code.code if gift_code else None)

    if gift_code is None or not gift_code.is_active:
        raise CodeNotFound(supplied)

    if now < gift_code.valid_from:
        raise CodeNotYetValid(supplied)
    if gift_code.valid_to is not None and now >= gift_code.valid_to:
        raise CodeExpired(supplied)

    if gift_code.used_count >= gift_code.usage_limit:
        raise CodeExhausted(supplied)

    if (
        gift_code.kind is DiscountKind.FREE_ACCESS
        and gift_code.product_code
        and gift_code.product_code != product_code
    ):
        raise CodeWrongProduct(supplied)

    return gift_code


def compute_discount(
    kind: DiscountKind,
    base_price: Decimal,
    percentage: Optional[Decimal] = None,
    amount: Optional[Decimal] = None,
) -> Decimal:
    """
    Discount for a given list price.

    - percentage: round(base * pct / 100)
    - fixed_amount: min(amount, base)
    - free_access: the whole base price
    """
    if kind is DiscountKind.PERCENTAGE:
        discount = round_half_up(base_price * (percentage or ZERO) / HUNDRED)
    elif kind is DiscountKind.FIXED_AMOUNT:
        discount = min(amount or ZERO, base_price)
    else:
        discount = base_price
    return max(ZERO, min(discount, base_price))


def quote_price(base_price: Decimal, gift_code: Optional[GiftCode] = None) -> PriceQuote:
    """Final price for a purchase, floored at zero."""
    if gift_code is None:
        return PriceQuote(base_price=base_price, discount=ZERO, final_price=base_price)

    discount = compute_discount(
        gift_code.kind,
        base_price,
        percentage=gift_code.discount_percentage,
        amount=gift_code.discount_amount,
    )
    return PriceQuote(
        base_price=base_price,
        discount=discount,
        final_price=max(ZERO, base_price - discount),
    )


def percent_off_equivalent(quote: PriceQuote) -> Decimal:
    """
    Percentage of the list price a gateway coupon must take off.

    A full waiver is exactly 100; anything else is rounded to two decimals,
    the precision Stripe accepts for ``percent_off``. The gateway total can
    then differ from the quoted final price by a minor unit or two; the
    ledger records the session's ``amount_total``, the amount actually
    charged.
    """
    if quote.base_price <= 0 or quote.final_price <= 0:
        return HUNDRED
    pct = quote.discount * HUNDRED / quote.base_price
    return min(HUNDRED, pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
