"""Content-store catalog documents: subscriptions, variants and coupons."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class BillingPeriod(str, Enum):
    """Billing periods offered by the catalog."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    THREE_MONTH = "three_month"
    SIX_MONTH = "six_month"
    ANNUALLY = "annually"
    OTHER = "other"  # customBillingPeriodMonths holds the length


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponApplication(str, Enum):
    """Which purchases a coupon applies to."""

    ALL = "all"
    SPECIFIC_SUBSCRIPTIONS = "specific_subscriptions"
    SPECIFIC_VARIANTS = "specific_variants"


class CatalogDocument(BaseModel):
    """Base for documents read from the content store (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data):
        # GROQ projections return null for missing fields; let defaults apply
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class DocumentRef(CatalogDocument):
    id: str = Field(..., alias="_id")


class SubscriptionVariant(CatalogDocument):
    """Price/interval alternative nested under a subscription."""

    key: str = Field(..., alias="_key")
    title: Optional[str] = None
    price: Decimal
    billing_period: str = BillingPeriod.MONTHLY.value
    custom_billing_period_months: Optional[int] = None
    stripe_price_id: Optional[str] = None
    is_default: bool = False
    is_popular: bool = False


class CatalogSubscription(CatalogDocument):
    """Subscription plan as defined in the catalog."""

    id: str = Field(..., alias="_id")
    title: str
    price: Decimal
    billing_period: str = BillingPeriod.MONTHLY.value
    custom_billing_period_months: Optional[int] = None
    stripe_price_id: Optional[str] = None
    stripe_product_id: Optional[str] = None
    has_variants: bool = False
    variants: list[SubscriptionVariant] = Field(default_factory=list)
    appointment_access: bool = False
    appointment_discount_percentage: Decimal = Decimal("0")
    allow_coupons: bool = False
    excluded_coupons: list[DocumentRef] = Field(default_factory=list)
    is_active: bool = True
    is_deleted: bool = False

    @property
    def offers_variants(self) -> bool:
        return self.has_variants and bool(self.variants)

    def find_variant(self, key: str) -> Optional[SubscriptionVariant]:
        return next((variant for variant in self.variants if variant.key == key), None)

    def excludes_coupon(self, coupon_id: str) -> bool:
        return any(ref.id == coupon_id for ref in self.excluded_coupons)


class CouponTarget(CatalogDocument):
    """One entry of a coupon's applicability list."""

    subscription: Optional[DocumentRef] = None  # null when the reference dangles
    variant_key: Optional[str] = None
    variant_title: Optional[str] = None


class Coupon(CatalogDocument):
    """Discount code document."""

    id: str = Field(..., alias="_id")
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    application_type: Optional[CouponApplication] = None
    applicable_subscriptions: list[CouponTarget] = Field(default_factory=list)
    usage_limit: Optional[int] = None
    usage_count: int = 0
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True
    minimum_purchase_amount: Optional[Decimal] = None

    @property
    def application_mode(self) -> CouponApplication:
        """
        Effective applicability mode.

        Coupons without an explicit mode apply to everything when they list no
        targets, and behave as variant-scoped when they do.
        """
        if self.application_type is not None:
            return self.application_type
        if self.applicable_subscriptions:
            return CouponApplication.SPECIFIC_VARIANTS
        return CouponApplication.ALL
