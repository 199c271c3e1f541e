"""Coupon validation and discount computation."""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import structlog

from telehealth.core.errors import (
    CouponExhausted,
    CouponExpired,
    CouponNotApplicable,
    CouponNotFound,
    MinimumNotMet,
)
from telehealth.schemas.catalog import CatalogSubscription, Coupon, CouponApplication, DiscountType
from telehealth.services.catalog import CatalogRepository
from telehealth.services.pricing import quantize_money

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AppliedCoupon:
    """A coupon that passed validation, with the discount it yields."""

    coupon: Coupon
    original_price: Decimal
    discounted_price: Decimal
    discount_amount: Decimal


def normalize_code(code: str) -> str:
    """Coupon codes match case-insensitively: trimmed and uppercased."""
    return code.strip().upper()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_applicable(
    coupon: Coupon,
    subscription_id: str,
    variant_key: Optional[str],
) -> bool:
    """
    Whether a coupon's applicability targets cover this purchase.

    Variant-scoped targets need both sides to agree: a target without a
    variant only matches a purchase without one, and a target with a variant
    only matches that exact variant.
    """
    mode = coupon.application_mode
    if mode == CouponApplication.ALL:
        return True

    targets = [t for t in coupon.applicable_subscriptions if t.subscription is not None]

    if mode == CouponApplication.SPECIFIC_SUBSCRIPTIONS:
        return any(t.subscription.id == subscription_id for t in targets)

    for target in targets:
        if target.subscription.id != subscription_id:
            continue
        if not target.variant_key and not variant_key:
            return True
        if target.variant_key and variant_key and target.variant_key == variant_key:
            return True
    return False


def compute_discount(coupon: Coupon, price: Decimal) -> tuple[Decimal, Decimal]:
    """
    Apply a coupon's discount to a price.

    Returns:
        Tuple of (discounted_price, discount_amount); the discounted price is
        clamped to zero and the discount never exceeds the price.
    """
    price = quantize_money(price)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = quantize_money(price * coupon.discount_value / Decimal(100))
    else:
        discount = quantize_money(coupon.discount_value)

    discounted = price - discount
    if discounted < 0:
        return Decimal("0.00"), price
    return discounted, discount


def check_coupon(
    coupon: Coupon,
    subscription: CatalogSubscription,
    variant_key: Optional[str],
    current_price: Decimal,
    now: Optional[datetime] = None,
) -> AppliedCoupon:
    """
    Validate an already-fetched coupon against a purchase.

    Read-only: usage counts are never touched here.

    Raises:
        CouponExpired: Outside the validity window
        CouponExhausted: Usage limit reached
        MinimumNotMet: Price below the coupon's minimum purchase amount
        CouponNotApplicable: Coupon excluded by, or not targeting, this purchase
    """
    now = _as_utc(now or datetime.now(timezone.utc))

    if now < _as_utc(coupon.valid_from) or now > _as_utc(coupon.valid_until):
        raise CouponExpired()

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise CouponExhausted()

    if coupon.minimum_purchase_amount is not None and current_price < coupon.minimum_purchase_amount:
        raise MinimumNotMet(
            f"Minimum purchase amount of ${quantize_money(coupon.minimum_purchase_amount)} required"
        )

    if subscription.excludes_coupon(coupon.id):
        raise CouponNotApplicable()

    if not is_applicable(coupon, subscription.id, variant_key):
        raise CouponNotApplicable()

    discounted, discount = compute_discount(coupon, current_price)
    return AppliedCoupon(
        coupon=coupon,
        original_price=quantize_money(current_price),
        discounted_price=discounted,
        discount_amount=discount,
    )


class CouponValidator:
    """Looks coupons up in the catalog and validates them against a purchase."""

    def __init__(self, catalog: CatalogRepository) -> None:
        self.catalog = catalog

    async def validate_and_apply(
        self,
        code: str,
        subscription: CatalogSubscription,
        variant_key: Optional[str],
        current_price: Decimal,
        now: Optional[datetime] = None,
    ) -> AppliedCoupon:
        """
        Validate a coupon code for a purchase and compute the discount.

        Safe to call repeatedly; it has no side effects.

        Raises:
            CouponNotFound: No active coupon with this code
            InvalidCoupon: Any other validation failure (see ``check_coupon``)
        """
        normalized = normalize_code(code)
        coupon = await self.catalog.get_active_coupon(normalized)
        if coupon is None:
            raise CouponNotFound()

        applied = check_coupon(coupon, subscription, variant_key, current_price, now)
        logger.info(
            "coupon.validated",
            code=coupon.code,
            subscription_id=subscription.id,
            variant_key=variant_key,
            original_price=str(applied.original_price),
            discounted_price=str(applied.discounted_price),
        )
        return applied
