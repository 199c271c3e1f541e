"""Subscription purchase and cancellation request/response schemas."""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from telehealth.core.security import classify_subscription_id


class CamelModel(BaseModel):
    """Request/response body with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionPurchaseRequest(CamelModel):
    """Purchase request schema."""

    subscription_id: str = Field(..., min_length=1, max_length=255, description="Catalog subscription id")
    user_id: UUID = Field(..., description="Purchasing user's id")
    user_email: EmailStr = Field(..., max_length=255, description="Purchasing user's email")
    variant_key: Optional[str] = Field(
        None,
        pattern=r"^[A-Za-z0-9_-]{1,100}$",
        description="Selected variant key (default variant when omitted)",
    )
    coupon_code: Optional[str] = Field(
        None,
        pattern=r"^[A-Za-z0-9_-]{1,50}$",
        description="Coupon code (case-insensitive)",
    )


class PurchaseMetadata(CamelModel):
    """Pricing details echoed back after checkout creation."""

    subscription_id: str
    variant_key: Optional[str] = None
    price: Decimal
    billing_period: str
    coupon_applied: Optional[bool] = None
    coupon_code: Optional[str] = None
    original_price: Optional[Decimal] = None
    discounted_price: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None

    @field_serializer("price", "original_price", "discounted_price", "discount_amount")
    def serialize_money(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None


class SubscriptionPurchaseResponse(CamelModel):
    """Purchase response schema."""

    success: bool = True
    session_id: str = Field(..., description="Stripe checkout session id")
    url: Optional[str] = Field(None, description="Hosted checkout URL")
    metadata: PurchaseMetadata


class SubscriptionCancelRequest(CamelModel):
    """Cancellation request schema."""

    subscription_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Subscription record id (UUID) or Stripe subscription id (sub_...)",
    )
    immediate: bool = Field(True, description="Cancel now instead of at period end")

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str) -> str:
        """Accept only record UUIDs and Stripe subscription ids."""
        classify_subscription_id(v)
        return v


class SubscriptionCancelResponse(CamelModel):
    """Cancellation response schema."""

    success: bool = True
    message: str
    status: str
    cancelled_immediately: bool


class AckResponse(BaseModel):
    """Acknowledgement for webhooks and relayed events."""

    success: bool
    message: Optional[str] = None
