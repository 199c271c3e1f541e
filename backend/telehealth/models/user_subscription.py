"""User Subscription database model."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from telehealth.core.database import Base


class SubscriptionStatus(str, Enum):
    """Lifecycle states shared by the relational row and the content-store document."""

    PENDING = "pending"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


class UserSubscription(Base):
    """
    Relational copy of a purchased subscription.

    Paired with exactly one ``userSubscription`` document in the content
    store through ``sanity_id``. This row is the source of truth for billing.
    """

    __tablename__ = "user_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )
    user_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Content store links
    sanity_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )  # Paired userSubscription document
    sanity_subscription_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )  # Catalog subscription document
    plan_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    variant_key: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    # Stripe data
    stripe_session_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )  # null until the processor confirms the subscription

    # Billing
    billing_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    billing_period: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )  # monthly, three_month, six_month, annually, other
    custom_billing_period_months: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    # Coupon snapshot
    coupon_code: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    coupon_discount_type: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )  # percentage, fixed
    coupon_discount_value: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2),
        nullable=True,
    )
    original_price: Mapped[Decimal | None] = mapped_column(
        Numeric(10, 2),
        nullable=True,
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
    )  # pending, active, past_due, cancelling, cancelled
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Dates
    start_date: Mapped[datetime] = mapped_column(
        nullable=False,
    )
    end_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    next_billing_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    cancellation_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<UserSubscription user_id={self.user_id} plan={self.sanity_subscription_id} status={self.status}>"
