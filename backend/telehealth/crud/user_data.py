"""CRUD operations for intake contact data."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth.models.user_data import UserData


async def get_user_data_by_email(db: AsyncSession, email: str) -> UserData | None:
    """
    Get contact data by email (case-insensitive).

    Args:
        db: Database session
        email: Email address

    Returns:
        UserData or None if not found
    """
    result = await db.execute(select(UserData).where(func.lower(UserData.email) == email.lower()))
    return result.scalar_one_or_none()
