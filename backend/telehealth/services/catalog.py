"""Catalog reads and processor-id cache-back against the document store."""

from typing import Optional

import structlog
from pydantic import ValidationError as SchemaError

from telehealth.core.errors import ExternalServiceError
from telehealth.schemas.catalog import CatalogSubscription, Coupon
from telehealth.services.sanity_client import DocumentStore

logger = structlog.get_logger(__name__)

SUBSCRIPTION_QUERY = """*[_type == "subscription" && _id == $id][0] {
  _id,
  title,
  price,
  billingPeriod,
  customBillingPeriodMonths,
  stripePriceId,
  stripeProductId,
  hasVariants,
  variants[]{
    _key,
    title,
    price,
    billingPeriod,
    customBillingPeriodMonths,
    stripePriceId,
    isDefault,
    isPopular
  },
  appointmentAccess,
  appointmentDiscountPercentage,
  allowCoupons,
  "excludedCoupons": excludedCoupons[]->{ _id },
  isActive,
  isDeleted
}"""

COUPON_QUERY = """*[_type == "coupon" && upper(code) == $code && isActive == true][0] {
  _id,
  code,
  discountType,
  discountValue,
  applicationType,
  applicableSubscriptions[]{
    subscription->{ _id },
    variantKey,
    variantTitle
  },
  usageLimit,
  usageCount,
  validFrom,
  validUntil,
  isActive,
  minimumPurchaseAmount
}"""


class CatalogRepository:
    """Reads subscription plans and coupons, and caches processor ids back."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get_subscription(self, subscription_id: str) -> Optional[CatalogSubscription]:
        """
        Fetch a subscription plan with its variants and excluded coupons.

        Returns:
            The plan, or None when no document has this id
        """
        document = await self.store.query(SUBSCRIPTION_QUERY, {"id": subscription_id})
        if not document:
            return None
        try:
            return CatalogSubscription.model_validate(document)
        except SchemaError as e:
            logger.error("catalog.subscription.malformed", subscription_id=subscription_id, error=str(e))
            raise ExternalServiceError("Subscription plan is misconfigured") from e

    async def get_active_coupon(self, code: str) -> Optional[Coupon]:
        """
        Fetch an active coupon by its normalised (uppercase) code.

        Returns:
            The coupon, or None when no active coupon matches
        """
        document = await self.store.query(COUPON_QUERY, {"code": code})
        if not document:
            return None
        try:
            return Coupon.model_validate(document)
        except SchemaError as e:
            logger.error("catalog.coupon.malformed", code=code, error=str(e))
            raise ExternalServiceError("Coupon is misconfigured") from e

    async def cache_product_id(self, subscription_id: str, product_id: str) -> None:
        await self.store.patch(
            subscription_id,
            set_fields={"stripeProductId": product_id},
            visibility="async",
        )
        logger.info("catalog.product_id.cached", subscription_id=subscription_id, product_id=product_id)

    async def cache_price_id(
        self,
        subscription_id: str,
        price_id: str,
        variant_key: Optional[str] = None,
    ) -> None:
        """Store a processor price id on the plan, or on one of its variants."""
        if variant_key:
            await self.store.patch(
                subscription_id,
                set_if_missing={"variants": []},
                set_fields={f'variants[_key=="{variant_key}"].stripePriceId': price_id},
                visibility="async",
            )
        else:
            await self.store.patch(
                subscription_id,
                set_fields={"stripePriceId": price_id},
                visibility="async",
            )
        logger.info(
            "catalog.price_id.cached",
            subscription_id=subscription_id,
            variant_key=variant_key,
            price_id=price_id,
        )

    async def increment_coupon_usage(self, coupon_id: str) -> None:
        """
        Count one use of a coupon.

        The increment is atomic on the store side, but it is not tied to the
        limit check done at validation time.
        """
        await self.store.patch(coupon_id, inc={"usageCount": 1}, visibility="async")
        logger.info("catalog.coupon.usage_incremented", coupon_id=coupon_id)
