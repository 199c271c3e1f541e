"""Stripe payment gateway."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

import stripe
import structlog

from telehealth.core.config import settings
from telehealth.core.errors import (
    ExternalServiceError,
    ProcessorResourceMissing,
    Unauthorized,
    ValidationError,
)
from telehealth.services.pricing import IntervalConfig

logger = structlog.get_logger(__name__)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Unix timestamp to a naive UTC datetime."""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]


@dataclass(frozen=True)
class ProcessorSubscription:
    """The parts of a processor subscription the reconciler needs."""

    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    ended_at: Optional[datetime] = None
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, obj: Any) -> "ProcessorSubscription":
        """
        Build from a Stripe subscription object or webhook payload.

        Newer API versions moved ``current_period_end`` from the subscription
        onto its items; both layouts are accepted.
        """
        period_end = _field(obj, "current_period_end")
        if period_end is None:
            items = _field(_field(obj, "items"), "data", [])
            if items:
                period_end = _field(items[0], "current_period_end")

        metadata = _field(obj, "metadata", {})
        if hasattr(metadata, "to_dict"):
            metadata = metadata.to_dict()
        customer = _field(obj, "customer")
        if not isinstance(customer, str):
            customer = _field(customer, "id")

        return cls(
            id=_field(obj, "id"),
            status=_field(obj, "status", "active"),
            customer_id=customer,
            current_period_end=from_unix(period_end),
            cancel_at_period_end=bool(_field(obj, "cancel_at_period_end", False)),
            ended_at=from_unix(_field(obj, "ended_at") or _field(obj, "canceled_at")),
            metadata={str(key): str(value) for key, value in dict(metadata).items()},
        )


class PaymentGateway(ABC):
    """Payment processor operations used by checkout and reconciliation."""

    @abstractmethod
    async def find_or_create_customer(self, email: str, user_id: str) -> str:
        """Return the id of the customer with this email, creating one if needed."""

    @abstractmethod
    async def create_product(self, name: str, metadata: dict[str, str]) -> str:
        """Create a product and return its id."""

    @abstractmethod
    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        interval: IntervalConfig,
        metadata: dict[str, str],
    ) -> str:
        """Create a recurring price and return its id."""

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        client_reference_id: str,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
    ) -> CheckoutSession:
        """Open a subscription-mode checkout session."""

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """Fetch a subscription."""

    @abstractmethod
    async def cancel_now(self, subscription_id: str) -> ProcessorSubscription:
        """Cancel a subscription immediately."""

    @abstractmethod
    async def cancel_at_period_end(self, subscription_id: str) -> ProcessorSubscription:
        """Schedule cancellation at the end of the current period."""

    @abstractmethod
    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Verify a webhook delivery and return the decoded event."""


class StripeGateway(PaymentGateway):
    """
    ``PaymentGateway`` backed by the Stripe SDK.

    The SDK is synchronous, so every call runs in the default executor. The
    API key is passed per request instead of being set on the module.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        app_url: str,
        currency: str = "usd",
        locale: str = "en",
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")
        self.currency = currency
        self.locale = locale

    @classmethod
    def from_settings(cls) -> "StripeGateway":
        return cls(
            api_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            app_url=settings.APP_URL,
            currency=settings.CURRENCY,
            locale=settings.CHECKOUT_LOCALE,
        )

    async def _call(self, operation: str, func: Callable[..., Any], **params: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, api_key=self.api_key, **params))
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing":
                logger.warning("stripe.resource_missing", operation=operation, error=str(e))
                raise ProcessorResourceMissing() from e
            logger.error("stripe.invalid_request", operation=operation, error=str(e))
            raise ExternalServiceError(f"Payment processor rejected {operation}") from e
        except stripe.StripeError as e:
            logger.error("stripe.api_error", operation=operation, error=str(e))
            raise ExternalServiceError(f"Payment processor {operation} failed") from e

    async def find_or_create_customer(self, email: str, user_id: str) -> str:
        customers = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        existing = _field(customers, "data", [])
        if existing:
            return _field(existing[0], "id")

        customer = await self._call(
            "customer creation",
            stripe.Customer.create,
            email=email,
            metadata={"userId": user_id},
        )
        logger.info("stripe.customer.created", customer_id=customer["id"], user_id=user_id)
        return customer["id"]

    async def create_product(self, name: str, metadata: dict[str, str]) -> str:
        product = await self._call(
            "product creation",
            stripe.Product.create,
            name=name,
            description=f"{name} subscription",
            metadata=metadata,
        )
        logger.info("stripe.product.created", product_id=product["id"])
        return product["id"]

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        interval: IntervalConfig,
        metadata: dict[str, str],
    ) -> str:
        price = await self._call(
            "price creation",
            stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
            recurring=interval.as_recurring(),
            metadata=metadata,
        )
        logger.info(
            "stripe.price.created",
            price_id=price["id"],
            unit_amount=unit_amount,
            interval=interval.interval,
            interval_count=interval.interval_count,
        )
        return price["id"]

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        client_reference_id: str,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
    ) -> CheckoutSession:
        session = await self._call(
            "checkout session creation",
            stripe.checkout.Session.create,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            locale=self.locale,
            success_url=f"{self.app_url}/appointment?subscription_success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/subscriptions?canceled=true",
            customer=customer_id,
            client_reference_id=client_reference_id,
            metadata=metadata,
            subscription_data={"metadata": subscription_metadata},
        )
        return CheckoutSession(id=session["id"], url=_field(session, "url"))

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        subscription = await self._call(
            "subscription lookup",
            stripe.Subscription.retrieve,
            id=subscription_id,
        )
        return ProcessorSubscription.from_payload(subscription)

    async def cancel_now(self, subscription_id: str) -> ProcessorSubscription:
        subscription = await self._call(
            "subscription cancellation",
            stripe.Subscription.cancel,
            subscription_exposed_id=subscription_id,
        )
        logger.info("stripe.subscription.cancelled", subscription_id=subscription_id)
        return ProcessorSubscription.from_payload(subscription)

    async def cancel_at_period_end(self, subscription_id: str) -> ProcessorSubscription:
        subscription = await self._call(
            "subscription update",
            stripe.Subscription.modify,
            id=subscription_id,
            cancel_at_period_end=True,
        )
        logger.info("stripe.subscription.cancel_scheduled", subscription_id=subscription_id)
        return ProcessorSubscription.from_payload(subscription)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Verify a webhook signature and decode the event body.

        Raises:
            Unauthorized: Missing or invalid signature
            ValidationError: Signed body is not JSON
        """
        if not signature or not self.webhook_secret:
            raise Unauthorized("Missing Stripe signature")

        body = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe.webhook.invalid_signature", error=str(e))
            raise Unauthorized("Invalid signature") from e

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise ValidationError("Invalid webhook payload") from e
