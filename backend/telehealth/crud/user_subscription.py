"""CRUD operations for user subscriptions."""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth.models.user_subscription import UserSubscription


async def create_user_subscription(db: AsyncSession, subscription: UserSubscription) -> UserSubscription:
    """
    Insert a subscription row.

    Args:
        db: Database session
        subscription: Populated, unsaved subscription

    Returns:
        The saved subscription
    """
    db.add(subscription)
    await db.commit()
    await db.refresh(subscription)
    return subscription


async def get_user_subscription_by_id(
    db: AsyncSession, subscription_id: uuid.UUID
) -> UserSubscription | None:
    """
    Get subscription by primary key.

    Args:
        db: Database session
        subscription_id: Subscription UUID

    Returns:
        Subscription or None if not found
    """
    result = await db.execute(select(UserSubscription).where(UserSubscription.id == subscription_id))
    return result.scalar_one_or_none()


async def get_user_subscription_by_stripe_id(
    db: AsyncSession, stripe_subscription_id: str
) -> UserSubscription | None:
    """
    Get subscription by processor subscription id.

    Args:
        db: Database session
        stripe_subscription_id: Stripe subscription id (``sub_...``)

    Returns:
        Subscription or None if not found
    """
    result = await db.execute(
        select(UserSubscription).where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def get_user_subscription_by_session_id(
    db: AsyncSession, stripe_session_id: str
) -> UserSubscription | None:
    """
    Get subscription by the checkout session that created it.

    Args:
        db: Database session
        stripe_session_id: Stripe checkout session id (``cs_...``)

    Returns:
        Subscription or None if not found
    """
    result = await db.execute(
        select(UserSubscription).where(UserSubscription.stripe_session_id == stripe_session_id)
    )
    return result.scalar_one_or_none()


async def update_user_subscription(
    db: AsyncSession, subscription: UserSubscription, values: dict[str, Any]
) -> UserSubscription:
    """
    Set column values on a subscription and commit.

    Args:
        db: Database session
        subscription: Subscription to update
        values: Column name to new value

    Returns:
        The refreshed subscription
    """
    for column, value in values.items():
        setattr(subscription, column, value)

    await db.commit()
    await db.refresh(subscription)
    return subscription
