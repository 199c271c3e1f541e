"""GoHighLevel CRM sync for paying customers."""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth.core.config import settings
from telehealth.core.errors import ExternalServiceError
from telehealth.crud.user_data import get_user_data_by_email
from telehealth.models.user_subscription import UserSubscription

logger = structlog.get_logger(__name__)

_E164_US = re.compile(r"^1\d{10}$")


def format_phone_e164(phone: str) -> str:
    """
    Normalise a US phone number to E.164 (``+1XXXXXXXXXX``).

    Raises:
        ValueError: If the number is empty or not a 10/11 digit US number
    """
    if not phone:
        raise ValueError("Phone number required")

    digits = re.sub(r"\D", "", phone)
    cleaned = f"1{digits}" if len(digits) == 10 else digits
    if not _E164_US.match(cleaned):
        raise ValueError(f"Invalid phone: {phone}")
    return f"+{cleaned}"


def extract_medication_type(plan_name: Optional[str]) -> str:
    name = (plan_name or "").lower()
    if "tirzepatide" in name:
        return "Tirzepatide"
    if "semaglutide" in name:
        return "Semaglutide"
    return "Unknown"


@dataclass(frozen=True)
class CustomerSnapshot:
    """Subscription fields copied out of the ORM row for a detached sync."""

    user_email: str
    plan_name: Optional[str]
    billing_amount: Optional[Decimal]
    billing_period: Optional[str]
    status: Optional[str]
    start_date: Optional[datetime]
    stripe_subscription_id: Optional[str]
    stripe_customer_id: Optional[str]

    @classmethod
    def from_record(cls, record: UserSubscription) -> "CustomerSnapshot":
        return cls(
            user_email=record.user_email,
            plan_name=record.plan_name,
            billing_amount=record.billing_amount,
            billing_period=record.billing_period,
            status=record.status,
            start_date=record.start_date,
            stripe_subscription_id=record.stripe_subscription_id,
            stripe_customer_id=record.stripe_customer_id,
        )


def build_custom_fields(
    snapshot: CustomerSnapshot,
    dose_level: int,
    next_billing_date: Optional[datetime],
    pharmacy_name: str,
) -> list[dict[str, str]]:
    """Flatten subscription data into CRM custom fields, dropping empty values."""
    values = {
        "stripe_subscription_id": snapshot.stripe_subscription_id or "",
        "stripe_customer_id": snapshot.stripe_customer_id or "",
        "stripe_plan_name": snapshot.plan_name or "",
        "stripe_medication_type": extract_medication_type(snapshot.plan_name),
        "stripe_billing_amount": str(snapshot.billing_amount) if snapshot.billing_amount is not None else "0",
        "stripe_billing_period": snapshot.billing_period or "",
        "stripe_subscription_status": snapshot.status or "",
        "stripe_start_date": snapshot.start_date.isoformat() if snapshot.start_date else "",
        "stripe_next_billing_date": next_billing_date.isoformat() if next_billing_date else "",
        "stripe_pharmacy_name": pharmacy_name,
        "stripe_dose_level": str(dose_level),
    }
    return [{"key": key, "value": value} for key, value in values.items() if value != ""]


class CRMSink(ABC):
    """Best-effort customer relationship sink."""

    @abstractmethod
    async def upsert_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        """Create or update a contact keyed by email."""


class GoHighLevelClient(CRMSink):
    """GoHighLevel contacts API client."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        location_id: str,
        api_version: str = "2021-07-28",
        enabled: bool = True,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.location_id = location_id
        self.api_version = api_version
        self.enabled = enabled
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "GoHighLevelClient":
        return cls(
            api_url=settings.GHL_API_URL,
            api_key=settings.GHL_API_KEY,
            location_id=settings.GHL_LOCATION_ID,
            api_version=settings.GHL_API_VERSION,
            enabled=settings.GHL_INTEGRATION_ENABLED,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def upsert_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        """
        Upsert a contact.

        Returns:
            API response body, or a stub message when the integration is off

        Raises:
            ExternalServiceError: If the integration is misconfigured or the call fails
        """
        if not self.enabled:
            logger.info("ghl.disabled", email=contact.get("email"))
            return {"message": "GHL disabled"}

        if not self.api_key or not self.location_id:
            raise ExternalServiceError("GHL_API_KEY and GHL_LOCATION_ID required")

        payload = {**contact, "locationId": self.location_id}
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Version": self.api_version,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.api_url}/contacts/upsert", json=payload, headers=headers)
                response.raise_for_status()
                return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            logger.error("ghl.api_error", status_code=e.response.status_code, body=e.response.text[:500])
            raise ExternalServiceError(f"GHL API error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("ghl.request_failed", error=str(e))
            raise ExternalServiceError("GHL request failed") from e


async def sync_customer(
    session_factory: async_sessionmaker[AsyncSession],
    crm: CRMSink,
    snapshot: CustomerSnapshot,
    next_billing_date: Optional[datetime],
    pharmacy_name: str = "",
) -> None:
    """
    Push a paying customer to the CRM.

    Runs detached from the webhook, so it opens its own database session.

    Raises:
        LookupError: No intake contact data for the subscription's email
        ExternalServiceError: CRM call failed
    """
    async with session_factory() as db:
        user_data = await get_user_data_by_email(db, snapshot.user_email)

    if user_data is None:
        raise LookupError(f"User data not found for subscription {snapshot.stripe_subscription_id}")

    contact: dict[str, Any] = {
        "firstName": user_data.first_name or "",
        "lastName": user_data.last_name or "",
        "email": user_data.email,
        "tags": ["stripe", "customer"],
        "source": "Stripe - Customer Purchase",
        "customFields": build_custom_fields(
            snapshot,
            user_data.dose_level or 1,
            next_billing_date,
            pharmacy_name or settings.GHL_PHARMACY_NAME,
        ),
    }
    if user_data.phone:
        try:
            contact["phone"] = format_phone_e164(user_data.phone)
        except ValueError:
            logger.warning("ghl.phone_invalid", email=user_data.email)

    await crm.upsert_contact(contact)
    logger.info("ghl.customer_synced", email=user_data.email)
