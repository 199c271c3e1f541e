"""Soft deletion of rows mirrored from content-store documents."""

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth.core.database import Base
from telehealth.models.order import Order, OrderItem
from telehealth.models.user_appointment import UserAppointment
from telehealth.models.user_subscription import UserSubscription

# Content-store document type -> mirrored table
DOCUMENT_TYPE_MODELS: dict[str, type[Base]] = {
    "userSubscription": UserSubscription,
    "userAppointment": UserAppointment,
    "order": Order,
}


async def soft_delete_by_sanity_id(
    db: AsyncSession, model: type[Base], sanity_id: str, now: datetime
) -> int:
    """
    Flag every row mirroring a document as deleted.

    Args:
        db: Database session
        model: Mapped class with ``sanity_id`` and ``is_deleted`` columns
        sanity_id: Id of the deleted document
        now: Timestamp stored in ``updated_at``

    Returns:
        Number of rows flagged
    """
    result = await db.execute(
        update(model)
        .where(model.sanity_id == sanity_id)
        .values(is_deleted=True, updated_at=now)
    )
    await db.commit()
    return result.rowcount


async def soft_delete_subscription_appointments(
    db: AsyncSession, subscription_sanity_id: str, now: datetime
) -> int:
    """Flag appointments granted through a subscription as deleted."""
    result = await db.execute(
        update(UserAppointment)
        .where(
            UserAppointment.subscription_id == subscription_sanity_id,
            UserAppointment.is_from_subscription.is_(True),
        )
        .values(is_deleted=True, updated_at=now)
    )
    await db.commit()
    return result.rowcount


async def soft_delete_order_items(db: AsyncSession, order_sanity_id: str, now: datetime) -> int:
    """Flag the line items of an order as deleted."""
    result = await db.execute(
        update(OrderItem)
        .where(OrderItem.order_id == order_sanity_id)
        .values(is_deleted=True, updated_at=now)
    )
    await db.commit()
    return result.rowcount
