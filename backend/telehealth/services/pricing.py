"""Effective price resolution and processor interval mapping."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from telehealth.core.errors import VariantNotFound
from telehealth.schemas.catalog import BillingPeriod, CatalogSubscription, SubscriptionVariant

CENT = Decimal("0.01")


@dataclass(frozen=True)
class EffectivePrice:
    """Price and billing interval to charge for one purchase."""

    price: Decimal
    billing_period: str
    custom_months: Optional[int]
    selected_variant: Optional[SubscriptionVariant]

    @property
    def variant_key(self) -> Optional[str]:
        return self.selected_variant.key if self.selected_variant else None


@dataclass(frozen=True)
class IntervalConfig:
    """Processor recurring interval (``interval`` + ``interval_count``)."""

    interval: str
    interval_count: int

    def as_recurring(self) -> dict:
        return {"interval": self.interval, "interval_count": self.interval_count}


def quantize_money(amount: Decimal) -> Decimal:
    """Round a currency amount to cents (half up)."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a currency amount to integer cents.

    Rounds to the nearest cent rather than truncating: 19.999 -> 2000.
    """
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_effective_price(
    subscription: CatalogSubscription,
    requested_variant_key: Optional[str] = None,
) -> EffectivePrice:
    """
    Select the variant to charge and its price/interval.

    With variants on offer, an explicit key must match exactly. Without a key
    the variant flagged ``isDefault`` wins, and the base plan is charged when
    none is flagged. Plans without variants ignore the key.

    Raises:
        VariantNotFound: If the requested key is not one of the plan's variants
    """
    selected: Optional[SubscriptionVariant] = None

    if subscription.offers_variants:
        if requested_variant_key:
            selected = subscription.find_variant(requested_variant_key)
            if selected is None:
                raise VariantNotFound()
        else:
            selected = next((v for v in subscription.variants if v.is_default), None)

    if selected is not None:
        return EffectivePrice(
            price=quantize_money(selected.price),
            billing_period=selected.billing_period,
            custom_months=selected.custom_billing_period_months,
            selected_variant=selected,
        )

    return EffectivePrice(
        price=quantize_money(subscription.price),
        billing_period=subscription.billing_period,
        custom_months=subscription.custom_billing_period_months,
        selected_variant=None,
    )


def interval_config(billing_period: str, custom_months: Optional[int] = None) -> IntervalConfig:
    """
    Map a catalog billing period onto a processor recurring interval.

    Custom periods up to 12 months bill monthly with that count, whole years
    bill yearly, and anything else collapses to a 12-month interval.
    Unknown periods bill monthly.
    """
    if billing_period == BillingPeriod.MONTHLY.value:
        return IntervalConfig("month", 1)
    if billing_period in (BillingPeriod.THREE_MONTH.value, BillingPeriod.QUARTERLY.value):
        return IntervalConfig("month", 3)
    if billing_period == BillingPeriod.SIX_MONTH.value:
        return IntervalConfig("month", 6)
    if billing_period == BillingPeriod.ANNUALLY.value:
        return IntervalConfig("year", 1)
    if billing_period in (BillingPeriod.OTHER.value, "custom"):
        months = custom_months if custom_months and custom_months > 0 else 1
        if months <= 12:
            return IntervalConfig("month", months)
        if months % 12 == 0:
            return IntervalConfig("year", months // 12)
        return IntervalConfig("month", 12)
    return IntervalConfig("month", 1)
