"""Subscription purchase workflow."""

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth.core.background import DetachedTasks, detached_tasks
from telehealth.core.errors import (
    Forbidden,
    InvalidCoupon,
    SubscriptionNotFound,
    Unauthenticated,
    ValidationError,
)
from telehealth.core.security import AuthenticatedUser, authenticate_token
from telehealth.models.user_subscription import SubscriptionStatus, UserSubscription
from telehealth.schemas.catalog import CatalogSubscription
from telehealth.services.catalog import CatalogRepository
from telehealth.services.coupons import AppliedCoupon, CouponValidator
from telehealth.services.payments import PaymentGateway
from telehealth.services.pricing import (
    EffectivePrice,
    interval_config,
    resolve_effective_price,
    to_minor_units,
)
from telehealth.services.records import SubscriptionRecords, to_document_value, utc_now
from telehealth.services.sanity_client import DocumentStore

logger = structlog.get_logger(__name__)

Authenticator = Callable[[Optional[str]], Awaitable[Optional[AuthenticatedUser]]]


@dataclass(frozen=True)
class PurchaseRequest:
    subscription_id: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    variant_key: Optional[str] = None
    coupon_code: Optional[str] = None


@dataclass(frozen=True)
class PurchaseResult:
    session_id: str
    url: Optional[str]
    record_id: uuid.UUID
    metadata: dict[str, Any]


class CheckoutOrchestrator:
    """
    Turns a purchase intent into a processor checkout session plus a pending
    subscription record.

    No subscription record is written before the checkout session exists.
    Product and price ids created along the way are cached back onto the
    catalog in detached tasks. Coupon usage is counted only once the pending
    record is saved.
    """

    def __init__(
        self,
        db: AsyncSession,
        store: DocumentStore,
        gateway: PaymentGateway,
        authenticate: Authenticator = authenticate_token,
        tasks: DetachedTasks = detached_tasks,
    ) -> None:
        self.catalog = CatalogRepository(store)
        self.coupons = CouponValidator(self.catalog)
        self.records = SubscriptionRecords(db, store)
        self.gateway = gateway
        self.authenticate = authenticate
        self.tasks = tasks

    async def _identify(
        self, request: PurchaseRequest, access_token: Optional[str]
    ) -> tuple[AuthenticatedUser, str, CatalogSubscription]:
        user, subscription = await asyncio.gather(
            self.authenticate(access_token),
            self.catalog.get_subscription(request.subscription_id),
            return_exceptions=True,
        )

        if isinstance(user, BaseException):
            raise user
        if user is None:
            raise Unauthenticated()
        if isinstance(subscription, BaseException):
            raise subscription

        if request.user_id and request.user_id.lower() != user.id.lower():
            logger.warning("checkout.user_mismatch", user_id=user.id)
            raise Forbidden("Access denied: you can only purchase for your own account")

        if subscription is None or subscription.is_deleted or not subscription.is_active:
            raise SubscriptionNotFound()

        email = user.email or request.user_email
        if not email:
            raise ValidationError("User email is required")

        return user, email, subscription

    async def _apply_coupon(
        self,
        request: PurchaseRequest,
        subscription: CatalogSubscription,
        effective: EffectivePrice,
    ) -> Optional[AppliedCoupon]:
        if not request.coupon_code:
            return None

        if not subscription.allow_coupons:
            logger.warning(
                "checkout.coupon_ignored",
                subscription_id=subscription.id,
                reason="coupons not allowed for this plan",
            )
            return None

        try:
            return await self.coupons.validate_and_apply(
                request.coupon_code,
                subscription,
                effective.variant_key,
                effective.price,
            )
        except InvalidCoupon as e:
            logger.warning(
                "checkout.coupon_rejected",
                subscription_id=subscription.id,
                variant_key=effective.variant_key,
                reason=e.message,
            )
            raise

    async def _resolve_product(self, subscription: CatalogSubscription) -> str:
        if subscription.stripe_product_id:
            return subscription.stripe_product_id

        product_id = await self.gateway.create_product(
            subscription.title,
            metadata={"sanityId": subscription.id},
        )
        self.tasks.spawn(
            self.catalog.cache_product_id(subscription.id, product_id),
            name="catalog.cache_product_id",
        )
        return product_id

    async def _resolve_price(
        self,
        subscription: CatalogSubscription,
        product_id: str,
        effective: EffectivePrice,
        coupon: Optional[AppliedCoupon],
    ) -> str:
        metadata = {
            "sanityId": subscription.id,
            "variantKey": effective.variant_key or "",
            "billingPeriod": effective.billing_period,
            "customBillingPeriodMonths": str(effective.custom_months or ""),
        }
        interval = interval_config(effective.billing_period, effective.custom_months)

        if coupon is not None:
            # Discounted prices are never cached or reused
            metadata.update(
                couponCode=coupon.coupon.code,
                originalPrice=str(coupon.original_price),
                tempPrice="true",
            )
            return await self.gateway.create_price(
                product_id,
                to_minor_units(coupon.discounted_price),
                interval,
                metadata,
            )

        if effective.selected_variant is not None:
            cached = effective.selected_variant.stripe_price_id
        else:
            cached = subscription.stripe_price_id
        if cached:
            return cached

        price_id = await self.gateway.create_price(
            product_id,
            to_minor_units(effective.price),
            interval,
            metadata,
        )
        self.tasks.spawn(
            self.catalog.cache_price_id(subscription.id, price_id, effective.variant_key),
            name="catalog.cache_price_id",
        )
        return price_id

    async def purchase(self, request: PurchaseRequest, access_token: Optional[str]) -> PurchaseResult:
        """
        Open a checkout session for a subscription plan.

        Args:
            request: Plan, optional variant and coupon, and the caller's claims
            access_token: Caller's access token

        Returns:
            Checkout session id and URL, with pricing metadata

        Raises:
            Unauthenticated: No valid session
            Forbidden: Body user id is not the caller
            SubscriptionNotFound: Plan missing, inactive or deleted
            VariantNotFound: Unknown variant key
            InvalidCoupon: Coupon rejected (purchase is not continued at full price)
            ExternalServiceError: Processor call failed
            PersistenceError: Pending record could not be saved
        """
        user, email, subscription = await self._identify(request, access_token)

        effective = resolve_effective_price(subscription, request.variant_key)
        coupon = await self._apply_coupon(request, subscription, effective)
        charge = coupon.discounted_price if coupon else effective.price

        customer_id = await self.gateway.find_or_create_customer(email, user.id)
        product_id = await self._resolve_product(subscription)
        price_id = await self._resolve_price(subscription, product_id, effective, coupon)

        record_id = uuid.uuid4()
        session_metadata = {
            "userId": user.id,
            "userEmail": email,
            "subscriptionId": subscription.id,
            "variantKey": effective.variant_key or "",
            "subscriptionType": "subscription",
            "userSubscriptionId": str(record_id),
        }
        if coupon is not None:
            session_metadata.update(
                couponId=coupon.coupon.id,
                couponCode=coupon.coupon.code,
                originalPrice=str(coupon.original_price),
                discountedPrice=str(coupon.discounted_price),
            )

        session = await self.gateway.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            client_reference_id=user.id,
            metadata=session_metadata,
            subscription_metadata={
                "userSubscriptionId": str(record_id),
                "userId": user.id,
                "subscriptionId": subscription.id,
            },
        )
        logger.info(
            "checkout.session.created",
            session_id=session.id,
            subscription_id=subscription.id,
            variant_key=effective.variant_key,
            coupon_code=coupon.coupon.code if coupon else None,
        )

        start_date = utc_now()
        record = UserSubscription(
            id=record_id,
            user_id=uuid.UUID(user.id),
            user_email=email,
            sanity_subscription_id=subscription.id,
            plan_name=subscription.title,
            variant_key=effective.variant_key,
            stripe_session_id=session.id,
            stripe_customer_id=customer_id,
            billing_amount=charge,
            billing_period=effective.billing_period,
            custom_billing_period_months=effective.custom_months,
            coupon_code=coupon.coupon.code if coupon else None,
            coupon_discount_type=coupon.coupon.discount_type.value if coupon else None,
            coupon_discount_value=coupon.coupon.discount_value if coupon else None,
            original_price=coupon.original_price if coupon else None,
            status=SubscriptionStatus.PENDING.value,
            is_active=False,
            is_deleted=False,
            start_date=start_date,
        )
        document = self._pending_document(subscription, record, coupon)
        await self.records.persist_pending(record, document)

        if coupon is not None:
            self.tasks.spawn(
                self.catalog.increment_coupon_usage(coupon.coupon.id),
                name="catalog.increment_coupon_usage",
            )

        return PurchaseResult(
            session_id=session.id,
            url=session.url,
            record_id=record_id,
            metadata=self._response_metadata(subscription, effective, charge, coupon),
        )

    @staticmethod
    def _pending_document(
        subscription: CatalogSubscription,
        record: UserSubscription,
        coupon: Optional[AppliedCoupon],
    ) -> dict[str, Any]:
        document = {
            "_type": "userSubscription",
            "userId": str(record.user_id),
            "userEmail": record.user_email,
            "subscription": {"_type": "reference", "_ref": subscription.id},
            "variantKey": record.variant_key,
            "startDate": to_document_value(record.start_date),
            "isActive": False,
            "status": SubscriptionStatus.PENDING.value,
            "stripeSubscriptionId": "",
            "stripeCustomerId": record.stripe_customer_id,
            "stripeSessionId": record.stripe_session_id,
            "billingPeriod": record.billing_period,
            "customBillingPeriodMonths": record.custom_billing_period_months,
            "billingAmount": to_document_value(record.billing_amount),
            "hasAppointmentAccess": subscription.appointment_access,
            "appointmentDiscountPercentage": to_document_value(subscription.appointment_discount_percentage),
        }
        if coupon is not None:
            document.update(
                appliedCouponId=coupon.coupon.id,
                appliedCouponCode=coupon.coupon.code,
                discountType=coupon.coupon.discount_type.value,
                discountValue=to_document_value(coupon.coupon.discount_value),
                originalPrice=to_document_value(coupon.original_price),
            )
        return {key: value for key, value in document.items() if value is not None}

    @staticmethod
    def _response_metadata(
        subscription: CatalogSubscription,
        effective: EffectivePrice,
        charge: Decimal,
        coupon: Optional[AppliedCoupon],
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "subscriptionId": subscription.id,
            "variantKey": effective.variant_key,
            "price": charge,
            "billingPeriod": effective.billing_period,
        }
        if coupon is not None:
            metadata.update(
                couponApplied=True,
                couponCode=coupon.coupon.code,
                originalPrice=coupon.original_price,
                discountedPrice=coupon.discounted_price,
                discountAmount=coupon.discount_amount,
            )
        return metadata
