"""
Paired subscription records across the relational and document stores.

Every purchased subscription lives twice: a ``user_subscriptions`` row and a
``userSubscription`` document, cross-linked through ``sanity_id``. The row is
the source of truth. Writes go to the row first; the document write is
attempted only after the row committed, and its failure is logged without
undoing the row.
"""

import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth.core.errors import CommerceError, PersistenceError
from telehealth.crud.user_subscription import (
    create_user_subscription,
    get_user_subscription_by_id,
    get_user_subscription_by_session_id,
    get_user_subscription_by_stripe_id,
    update_user_subscription,
)
from telehealth.models.user_subscription import UserSubscription
from telehealth.services.sanity_client import DocumentStore

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    """Current time as naive UTC, the convention of every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_document_value(value: Any) -> Any:
    """Convert a column value into its JSON document form."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


@dataclass(frozen=True)
class RecordChanges:
    """
    Absolute values to write to both copies of a subscription.

    Unset (None) fields are left untouched. Handlers only ever write
    absolute values, so applying the same changes twice is harmless.
    """

    status: Optional[str] = None
    is_active: Optional[bool] = None
    end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    cancellation_date: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None

    # Row column -> document field
    DOCUMENT_FIELDS = {
        "status": "status",
        "is_active": "isActive",
        "end_date": "endDate",
        "next_billing_date": "nextBillingDate",
        "cancellation_date": "cancellationDate",
        "stripe_subscription_id": "stripeSubscriptionId",
        "stripe_customer_id": "stripeCustomerId",
    }

    def column_values(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def document_values(self) -> dict[str, Any]:
        return {
            self.DOCUMENT_FIELDS[column]: to_document_value(value)
            for column, value in self.column_values().items()
        }


class SubscriptionRecords:
    """Reads and writes the paired copies of a user subscription."""

    def __init__(self, db: AsyncSession, store: DocumentStore) -> None:
        self.db = db
        self.store = store

    async def get(self, record_id: uuid.UUID) -> Optional[UserSubscription]:
        return await get_user_subscription_by_id(self.db, record_id)

    async def get_by_processor_id(self, stripe_subscription_id: str) -> Optional[UserSubscription]:
        return await get_user_subscription_by_stripe_id(self.db, stripe_subscription_id)

    async def get_by_session_id(self, stripe_session_id: str) -> Optional[UserSubscription]:
        return await get_user_subscription_by_session_id(self.db, stripe_session_id)

    async def persist_pending(
        self,
        record: UserSubscription,
        document: dict[str, Any],
    ) -> UserSubscription:
        """
        Save a new pending subscription in both stores.

        The document is created first so the row can carry its id. A failed
        document create leaves the row without a ``sanity_id``; a failed row
        insert fails the whole operation even when the document exists.

        Args:
            record: Unsaved row in status ``pending``
            document: ``userSubscription`` document body

        Returns:
            The saved row

        Raises:
            PersistenceError: If the relational insert fails
        """
        try:
            record.sanity_id = await self.store.create(document, visibility="sync")
        except CommerceError as e:
            logger.warning(
                "records.document_create_failed",
                record_id=str(record.id),
                error=str(e),
            )
            record.sanity_id = None

        try:
            saved = await create_user_subscription(self.db, record)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "records.insert_failed",
                record_id=str(record.id),
                orphaned_document=record.sanity_id,
                error=str(e),
            )
            raise PersistenceError() from e

        logger.info(
            "records.pending_created",
            record_id=str(saved.id),
            sanity_id=saved.sanity_id,
            stripe_session_id=saved.stripe_session_id,
        )
        return saved

    async def transition(self, record: UserSubscription, changes: RecordChanges) -> UserSubscription:
        """
        Apply changes to both copies, row first.

        Raises:
            PersistenceError: If the row update fails; the document is not touched
        """
        values = changes.column_values()
        values["updated_at"] = utc_now()
        try:
            record = await update_user_subscription(self.db, record, values)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("records.update_failed", record_id=str(record.id), error=str(e))
            raise PersistenceError("Failed to update subscription") from e

        if record.sanity_id:
            try:
                await self.store.patch(record.sanity_id, set_fields=changes.document_values())
            except CommerceError as e:
                logger.warning(
                    "records.document_sync_failed",
                    record_id=str(record.id),
                    sanity_id=record.sanity_id,
                    error=str(e),
                )

        logger.info(
            "records.transitioned",
            record_id=str(record.id),
            status=record.status,
            is_active=record.is_active,
        )
        return record
