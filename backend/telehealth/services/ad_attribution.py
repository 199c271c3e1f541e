"""Facebook Conversions API relay."""

import hashlib
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog
from limits import parse
from limits.aio.storage import MemoryStorage
from limits.aio.strategies import FixedWindowRateLimiter

from telehealth.core.config import settings
from telehealth.core.errors import ExternalServiceError, RateLimited

logger = structlog.get_logger(__name__)

GRAPH_API_URL = "https://graph.facebook.com"

# Keys of user_data that are hashed before leaving the server
HASHED_USER_FIELDS = ("em", "fn", "ln", "st", "db", "ph")


def normalize_user_field(key: str, value: str) -> str:
    """Normalise a PII value the way the Conversions API expects before hashing."""
    value = value.strip().lower()
    if key in ("ph", "db"):
        return re.sub(r"\D", "", value)
    if key in ("fn", "ln", "st"):
        return re.sub(r"\s+", "", value)
    return value


def hash_user_field(key: str, value: str) -> str:
    return hashlib.sha256(normalize_user_field(key, value).encode("utf-8")).hexdigest()


@dataclass
class ConversionEvent:
    """One server-side conversion event."""

    event_name: str
    event_source_url: str
    event_id: Optional[str] = None
    event_time: Optional[int] = None
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    user_data: dict[str, str] = field(default_factory=dict)
    custom_data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        user_data: dict[str, Any] = {}
        if self.client_ip_address:
            user_data["client_ip_address"] = self.client_ip_address
        if self.client_user_agent:
            user_data["client_user_agent"] = self.client_user_agent
        for key in HASHED_USER_FIELDS:
            value = self.user_data.get(key)
            if value:
                user_data[key] = [hash_user_field(key, value)]

        return {
            "event_name": self.event_name,
            "event_time": self.event_time or int(time.time()),
            "event_source_url": self.event_source_url,
            "event_id": self.event_id or str(uuid.uuid4()),
            "action_source": "website",
            "user_data": user_data,
            "custom_data": {k: v for k, v in self.custom_data.items() if v is not None},
        }


class AdEventSink(ABC):
    """Best-effort ad-attribution sink."""

    @property
    @abstractmethod
    def configured(self) -> bool:
        """Whether events can be sent at all."""

    @abstractmethod
    async def send_event(self, event: ConversionEvent) -> None:
        """Send one conversion event."""


class FacebookConversionsClient(AdEventSink):
    """
    Conversions API client with an outbound request budget.

    The budget (e.g. "50 per 5 minutes") is checked before any request is
    made; an exhausted budget raises ``RateLimited`` without calling out.
    """

    def __init__(
        self,
        access_token: str,
        dataset_id: str,
        api_version: str = "v19.0",
        budget: str = "50 per 5 minutes",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = access_token
        self.dataset_id = dataset_id
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport
        self._budget = parse(budget)
        self._limiter = FixedWindowRateLimiter(MemoryStorage())

    @classmethod
    def from_settings(cls) -> "FacebookConversionsClient":
        return cls(
            access_token=settings.FACEBOOK_ACCESS_TOKEN,
            dataset_id=settings.FACEBOOK_DATASET_ID,
            api_version=settings.FACEBOOK_GRAPH_API_VERSION,
            budget=settings.FACEBOOK_EVENTS_BUDGET,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.dataset_id)

    async def send_event(self, event: ConversionEvent) -> None:
        """
        Send one event.

        Raises:
            ExternalServiceError: Missing configuration or failed request
            RateLimited: Outbound budget exhausted
        """
        if not self.configured:
            raise ExternalServiceError("Missing Facebook configuration")

        if not await self._limiter.hit(self._budget, "facebook-capi", self.dataset_id):
            logger.warning("facebook.budget_exhausted", event_name=event.event_name)
            raise RateLimited()

        url = f"{GRAPH_API_URL}/{self.api_version}/{self.dataset_id}/events"
        body = {"data": [event.to_payload()], "access_token": self.access_token}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "facebook.api_error",
                status_code=e.response.status_code,
                event_name=event.event_name,
            )
            raise ExternalServiceError("Failed to send event") from e
        except httpx.HTTPError as e:
            logger.error("facebook.request_failed", error=str(e), event_name=event.event_name)
            raise ExternalServiceError("Failed to send event") from e

        logger.info("facebook.event_sent", event_name=event.event_name, event_id=body["data"][0]["event_id"])
