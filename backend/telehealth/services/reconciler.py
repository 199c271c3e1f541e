"""
Webhook-driven reconciliation of subscription records.

Processor deliveries are at-least-once and unordered, so every handler writes
absolute values taken from the event and a ``cancelled`` record never leaves
that state. Replaying an event, or receiving an older one late, converges on
the same final state.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth.core.background import DetachedTasks, detached_tasks
from telehealth.core.config import settings
from telehealth.core.database import AsyncSessionLocal
from telehealth.core.errors import (
    Forbidden,
    PersistenceError,
    ProcessorResourceMissing,
    RecordNotFound,
    Unauthorized,
    ValidationError,
)
from telehealth.core.security import (
    AuthenticatedUser,
    SubscriptionIdKind,
    classify_subscription_id,
    verify_shared_secret,
)
from telehealth.crud.soft_delete import (
    DOCUMENT_TYPE_MODELS,
    soft_delete_by_sanity_id,
    soft_delete_order_items,
    soft_delete_subscription_appointments,
)
from telehealth.models.user_subscription import SubscriptionStatus, UserSubscription
from telehealth.services.ad_attribution import AdEventSink, ConversionEvent
from telehealth.services.crm import CRMSink, CustomerSnapshot, sync_customer
from telehealth.services.payments import PaymentGateway, ProcessorSubscription
from telehealth.services.records import RecordChanges, SubscriptionRecords, utc_now
from telehealth.services.sanity_client import DocumentStore

logger = structlog.get_logger(__name__)

RECORD_ID_METADATA_KEY = "userSubscriptionId"

# Processor subscription statuses that end the subscription for good
PROCESSOR_TERMINAL_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


def invoice_subscription_id(invoice: dict[str, Any]) -> Optional[str]:
    """Processor subscription id of an invoice, across API versions."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def invoice_subscription_metadata(invoice: dict[str, Any]) -> dict[str, Any]:
    details = invoice.get("subscription_details") or (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("metadata") or {}


@dataclass(frozen=True)
class CancelOutcome:
    status: str
    message: str
    cancelled_immediately: bool


class WebhookReconciler:
    """Applies processor and content-store events to subscription records."""

    def __init__(
        self,
        db: AsyncSession,
        store: DocumentStore,
        gateway: PaymentGateway,
        crm: CRMSink,
        ads: AdEventSink,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        tasks: DetachedTasks = detached_tasks,
    ) -> None:
        self.db = db
        self.records = SubscriptionRecords(db, store)
        self.gateway = gateway
        self.crm = crm
        self.ads = ads
        self.session_factory = session_factory
        self.tasks = tasks

    # ------------------------------------------------------------------
    # Processor events
    # ------------------------------------------------------------------

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """
        Dispatch a verified processor event.

        Returns:
            Response body for the webhook delivery
        """
        event_type = event.get("type", "")
        payload = (event.get("data") or {}).get("object") or {}
        handlers = {
            "checkout.session.completed": self.checkout_completed,
            "invoice.paid": self.invoice_paid,
            "invoice.payment_succeeded": self.invoice_paid,
            "invoice.payment_failed": self.invoice_failed,
            "customer.subscription.updated": self.subscription_updated,
            "customer.subscription.deleted": self.subscription_deleted,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("webhook.event.ignored", event_type=event_type, event_id=event.get("id"))
            return {"success": True, "message": f"Unhandled event type {event_type}"}

        logger.info("webhook.event.received", event_type=event_type, event_id=event.get("id"))
        return await handler(payload)

    async def _find_record(
        self,
        stripe_subscription_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[UserSubscription]:
        """
        Locate a record by processor subscription id, falling back to the
        record id written into the processor subscription's metadata at
        checkout (for events that beat ``checkout.session.completed``).
        """
        if stripe_subscription_id:
            record = await self.records.get_by_processor_id(stripe_subscription_id)
            if record is not None:
                return record

        record_id = (metadata or {}).get(RECORD_ID_METADATA_KEY)
        if not record_id:
            return None
        try:
            record = await self.records.get(uuid.UUID(str(record_id)))
        except ValueError:
            return None
        if record is None:
            return None
        if record.stripe_subscription_id and record.stripe_subscription_id != stripe_subscription_id:
            logger.warning(
                "webhook.record_linked_elsewhere",
                record_id=str(record.id),
                stripe_subscription_id=stripe_subscription_id,
            )
            return None
        return record

    @staticmethod
    def _is_terminal(record: UserSubscription) -> bool:
        return record.status == SubscriptionStatus.CANCELLED.value

    def _ignored(self, record: UserSubscription, event: str) -> dict[str, Any]:
        logger.info("webhook.terminal_record", record_id=str(record.id), event=event)
        return {"success": True, "message": "Subscription already cancelled; event ignored"}

    async def checkout_completed(self, session: dict[str, Any]) -> dict[str, Any]:
        """Link the pending record to the processor subscription it produced."""
        if session.get("mode") != "subscription":
            return {"success": True, "message": "Not a subscription checkout"}

        record = await self.records.get_by_session_id(session.get("id", ""))
        if record is None:
            record = await self._find_record(session.get("subscription"), session.get("metadata"))
        if record is None:
            logger.warning("webhook.checkout.record_missing", session_id=session.get("id"))
            return {"success": True, "message": "No pending subscription for this session"}

        if self._is_terminal(record):
            return self._ignored(record, "checkout.session.completed")

        changes = RecordChanges(
            stripe_subscription_id=session.get("subscription") or None,
            stripe_customer_id=session.get("customer") or None,
        )
        await self.records.transition(record, changes)
        logger.info(
            "webhook.checkout.linked",
            record_id=str(record.id),
            stripe_subscription_id=record.stripe_subscription_id,
        )
        return {"success": True, "message": "Checkout session linked"}

    async def invoice_paid(self, invoice: dict[str, Any]) -> dict[str, Any]:
        """
        Activate a subscription after a successful payment.

        Raises:
            ValidationError: Invoice carries no subscription id
            RecordNotFound: No record for the subscription (none is created)
        """
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            raise ValidationError("No subscription ID in invoice")

        processor = await self.gateway.retrieve_subscription(stripe_subscription_id)
        metadata = {**processor.metadata, **invoice_subscription_metadata(invoice)}
        record = await self._find_record(stripe_subscription_id, metadata)
        if record is None:
            logger.warning("webhook.invoice.record_missing", stripe_subscription_id=stripe_subscription_id)
            raise RecordNotFound()

        if self._is_terminal(record):
            return self._ignored(record, "invoice.paid")

        # The processor subscription decides the outcome, so a replayed or late
        # invoice cannot undo a scheduled cancellation
        period_end = processor.current_period_end
        changes = self._changes_for(processor) or RecordChanges(
            status=SubscriptionStatus.ACTIVE.value,
            is_active=True,
            end_date=period_end,
            next_billing_date=period_end,
        )
        record = await self.records.transition(
            record,
            replace(
                changes,
                stripe_subscription_id=stripe_subscription_id,
                stripe_customer_id=processor.customer_id,
            ),
        )
        logger.info(
            "webhook.invoice.paid",
            record_id=str(record.id),
            stripe_subscription_id=stripe_subscription_id,
            status=changes.status,
            period_end=period_end.isoformat() if period_end else None,
        )

        self.tasks.spawn(
            sync_customer(self.session_factory, self.crm, CustomerSnapshot.from_record(record), period_end),
            name="crm.sync_customer",
        )
        if self.ads.configured:
            self.tasks.spawn(
                self.ads.send_event(self._purchase_event(invoice, record)),
                name="ads.purchase_event",
            )
        return {"success": True, "message": "Invoice payment processed successfully"}

    @staticmethod
    def _purchase_event(invoice: dict[str, Any], record: UserSubscription) -> ConversionEvent:
        amount = Decimal(invoice.get("amount_paid") or 0) / 100
        return ConversionEvent(
            event_name="Purchase",
            event_source_url=f"{settings.APP_URL.rstrip('/')}/appointment",
            event_id=invoice.get("id"),
            user_data={"em": record.user_email},
            custom_data={
                "currency": (invoice.get("currency") or settings.CURRENCY).upper(),
                "value": float(amount),
                "content_name": record.plan_name,
                "subscription_id": record.sanity_subscription_id,
                "billing_period": record.billing_period,
            },
        )

    async def invoice_failed(self, invoice: dict[str, Any]) -> dict[str, Any]:
        """
        Mark a subscription past due; ``is_active`` is left as it was.

        A failure the processor has already recovered from (the subscription
        is active again) is stale: the record follows the processor instead.

        Raises:
            ValidationError: Invoice carries no subscription id
            RecordNotFound: No record for the subscription
        """
        stripe_subscription_id = invoice_subscription_id(invoice)
        if not stripe_subscription_id:
            raise ValidationError("No subscription ID in invoice")

        record = await self._find_record(stripe_subscription_id, invoice_subscription_metadata(invoice))
        if record is None:
            logger.warning("webhook.invoice.record_missing", stripe_subscription_id=stripe_subscription_id)
            raise RecordNotFound()

        if self._is_terminal(record):
            return self._ignored(record, "invoice.payment_failed")

        try:
            processor = await self.gateway.retrieve_subscription(stripe_subscription_id)
        except ProcessorResourceMissing:
            logger.warning("webhook.invoice.processor_missing", stripe_subscription_id=stripe_subscription_id)
            processor = None

        if processor is not None and processor.status in ("active", "trialing"):
            await self.records.transition(
                record,
                replace(self._changes_for(processor), stripe_subscription_id=stripe_subscription_id),
            )
            logger.info(
                "webhook.invoice.failed_stale",
                record_id=str(record.id),
                stripe_subscription_id=stripe_subscription_id,
                processor_status=processor.status,
            )
            return {"success": True, "message": "Invoice payment failure already resolved"}

        await self.records.transition(
            record,
            RecordChanges(
                status=SubscriptionStatus.PAST_DUE.value,
                stripe_subscription_id=stripe_subscription_id,
            ),
        )
        logger.info("webhook.invoice.failed", record_id=str(record.id), stripe_subscription_id=stripe_subscription_id)
        return {"success": True, "message": "Invoice payment failure handled"}

    @staticmethod
    def _changes_for(processor: ProcessorSubscription) -> Optional[RecordChanges]:
        """Local state matching a processor subscription, or None to leave it alone."""
        period_end = processor.current_period_end
        if processor.status in PROCESSOR_TERMINAL_STATUSES:
            return RecordChanges(
                status=SubscriptionStatus.CANCELLED.value,
                is_active=False,
                end_date=processor.ended_at or period_end or utc_now(),
            )
        if processor.status in ("active", "trialing"):
            if processor.cancel_at_period_end:
                return RecordChanges(
                    status=SubscriptionStatus.CANCELLING.value,
                    is_active=True,
                    end_date=period_end,
                )
            return RecordChanges(
                status=SubscriptionStatus.ACTIVE.value,
                is_active=True,
                end_date=period_end,
                next_billing_date=period_end,
            )
        if processor.status == "past_due":
            return RecordChanges(status=SubscriptionStatus.PAST_DUE.value)
        return None

    async def subscription_updated(self, payload: dict[str, Any]) -> dict[str, Any]:
        processor = ProcessorSubscription.from_payload(payload)
        record = await self._find_record(processor.id, processor.metadata)
        if record is None:
            logger.warning("webhook.subscription.record_missing", stripe_subscription_id=processor.id)
            return {"success": True, "message": "No local subscription for this event"}

        if self._is_terminal(record):
            return self._ignored(record, "customer.subscription.updated")

        changes = self._changes_for(processor)
        if changes is None:
            logger.info("webhook.subscription.status_ignored", status=processor.status, record_id=str(record.id))
            return {"success": True, "message": f"No action for status {processor.status}"}

        await self.records.transition(record, changes)
        logger.info("webhook.subscription.updated", record_id=str(record.id), status=changes.status)
        return {"success": True, "message": "Subscription updated"}

    async def subscription_deleted(self, payload: dict[str, Any]) -> dict[str, Any]:
        processor = ProcessorSubscription.from_payload(payload)
        record = await self._find_record(processor.id, processor.metadata)
        if record is None:
            logger.warning("webhook.subscription.record_missing", stripe_subscription_id=processor.id)
            return {"success": True, "message": "No local subscription for this event"}

        if self._is_terminal(record):
            return self._ignored(record, "customer.subscription.deleted")

        now = utc_now()
        await self.records.transition(
            record,
            RecordChanges(
                status=SubscriptionStatus.CANCELLED.value,
                is_active=False,
                end_date=processor.ended_at or now,
                cancellation_date=record.cancellation_date or now,
            ),
        )
        logger.info("webhook.subscription.deleted", record_id=str(record.id))
        return {"success": True, "message": "Subscription cancelled"}

    # ------------------------------------------------------------------
    # User-initiated cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        subscription_id: str,
        user: AuthenticatedUser,
        immediate: bool = True,
    ) -> CancelOutcome:
        """
        Cancel a subscription on behalf of its owner.

        ``subscription_id`` may be the record id or the processor id; the
        format tells them apart.

        Raises:
            ValidationError: Id matches neither format
            RecordNotFound: No such subscription
            Forbidden: Caller does not own it
        """
        try:
            kind = classify_subscription_id(subscription_id)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if kind == SubscriptionIdKind.RECORD:
            record = await self.records.get(uuid.UUID(subscription_id))
        else:
            record = await self.records.get_by_processor_id(subscription_id)

        if record is None:
            raise RecordNotFound()

        if str(record.user_id).lower() != user.id.lower():
            logger.warning("cancel.forbidden", record_id=str(record.id), user_id=user.id)
            raise Forbidden("Access denied: You can only cancel your own subscriptions")

        if self._is_terminal(record):
            return CancelOutcome(
                status=SubscriptionStatus.CANCELLED.value,
                message="Subscription is already cancelled",
                cancelled_immediately=False,
            )

        now = utc_now()
        stripe_subscription_id = record.stripe_subscription_id
        processor: Optional[ProcessorSubscription] = None
        scheduled = False

        if stripe_subscription_id:
            try:
                if immediate:
                    processor = await self.gateway.cancel_now(stripe_subscription_id)
                else:
                    processor = await self.gateway.cancel_at_period_end(stripe_subscription_id)
                    scheduled = True
            except ProcessorResourceMissing:
                # Already gone upstream: finish the cancellation locally
                logger.warning("cancel.processor_missing", record_id=str(record.id))

        if scheduled:
            changes = RecordChanges(
                status=SubscriptionStatus.CANCELLING.value,
                is_active=True,
                end_date=processor.current_period_end if processor else None,
                cancellation_date=now,
            )
            message = "Subscription will be cancelled at the end of your billing period"
        else:
            changes = RecordChanges(
                status=SubscriptionStatus.CANCELLED.value,
                is_active=False,
                end_date=now,
                cancellation_date=now,
            )
            message = "Subscription has been cancelled immediately"

        await self.records.transition(record, changes)
        logger.info(
            "cancel.completed",
            record_id=str(record.id),
            status=changes.status,
            immediate=not scheduled,
        )
        return CancelOutcome(status=changes.status, message=message, cancelled_immediately=not scheduled)

    # ------------------------------------------------------------------
    # Content-store events
    # ------------------------------------------------------------------

    async def handle_content_event(self, payload: dict[str, Any], secret: Optional[str]) -> dict[str, Any]:
        """
        Mirror a content-store deletion as a soft delete.

        Raises:
            Unauthorized: Shared secret mismatch
            PersistenceError: The primary soft delete failed
        """
        if not verify_shared_secret(secret, settings.SANITY_WEBHOOK_SECRET):
            logger.warning("webhook.sanity.unauthorized")
            raise Unauthorized()

        if payload.get("operation") != "delete":
            return {"success": True, "message": "Webhook received but no action taken"}

        document_id = payload.get("_id")
        document_type = payload.get("_type")
        model = DOCUMENT_TYPE_MODELS.get(document_type or "")
        if model is None or not document_id:
            return {"success": False, "message": f"No action taken for document type {document_type}"}

        now = utc_now()
        try:
            count = await soft_delete_by_sanity_id(self.db, model, document_id, now)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("webhook.sanity.soft_delete_failed", document_id=document_id, error=str(e))
            raise PersistenceError(f"Failed to mark {document_type} as deleted") from e

        logger.info("webhook.sanity.soft_deleted", document_id=document_id, document_type=document_type, rows=count)
        await self._cascade(document_type, document_id, now)
        return {"success": True, "message": f"Successfully marked {document_type} as deleted"}

    async def _cascade(self, document_type: str, document_id: str, now: datetime) -> None:
        try:
            if document_type == "userSubscription":
                count = await soft_delete_subscription_appointments(self.db, document_id, now)
            elif document_type == "order":
                count = await soft_delete_order_items(self.db, document_id, now)
            else:
                return
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning("webhook.sanity.cascade_failed", document_id=document_id, error=str(e))
            return
        logger.info("webhook.sanity.cascaded", document_id=document_id, document_type=document_type, rows=count)
