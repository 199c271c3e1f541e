"""Pytest configuration and fixtures for telehealth commerce tests."""

import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

# Settings are read at import time; configure them before importing the app
os.environ.update(
    {
        "APP_ENV": "test",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "SUPABASE_JWT_SECRET": "test-jwt-signing-value",
        "STRIPE_SECRET_KEY": "sk_test_dummy",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_dummy",
        "SANITY_PROJECT_ID": "testproject",
        "SANITY_API_TOKEN": "sanity-test-credential",
        "SANITY_WEBHOOK_SECRET": "sanity-hook-value",
        "RATE_LIMIT_ENABLED": "false",
        "APP_URL": "https://app.example.com",
    }
)

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from telehealth.api.deps import (
    get_ad_sink,
    get_crm,
    get_document_store,
    get_payment_gateway,
    get_session_factory,
)
from telehealth.core.background import DetachedTasks
from telehealth.core.config import settings
from telehealth.core.database import Base, get_db
from telehealth.core.errors import ExternalServiceError, ProcessorResourceMissing, Unauthorized
from telehealth.core.security import AuthenticatedUser
from telehealth.main import app
from telehealth.models.user_subscription import SubscriptionStatus, UserSubscription
from telehealth.services.ad_attribution import AdEventSink, ConversionEvent
from telehealth.services.crm import CRMSink
from telehealth.services.payments import CheckoutSession, PaymentGateway, ProcessorSubscription
from telehealth.services.pricing import IntervalConfig
from telehealth.services.sanity_client import DocumentStore

# Use SQLite in-memory database for tests (faster and no setup needed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

USER_ID = "3f2b8c1e-4d5a-4b6c-9d7e-8f9a0b1c2d3e"
OTHER_USER_ID = "9a8b7c6d-5e4f-4a3b-8c2d-1e0f9a8b7c6d"
USER_EMAIL = "patient@example.com"


# ----------------------------------------------------------------------
# Fakes for external systems
# ----------------------------------------------------------------------


class FakeDocumentStore(DocumentStore):
    """In-memory content store that understands the catalog queries."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.coupons: dict[str, dict[str, Any]] = {}
        self.created: dict[str, dict[str, Any]] = {}
        self.patches: list[dict[str, Any]] = []
        self.fail_create = False
        self.fail_patch = False
        self.query_count = 0

    async def query(self, groq: str, params: Optional[dict[str, Any]] = None) -> Any:
        self.query_count += 1
        params = params or {}
        if '_type == "coupon"' in groq:
            return next(
                (c for c in self.coupons.values() if c["code"].upper() == params["code"] and c.get("isActive", True)),
                None,
            )
        return self.subscriptions.get(params.get("id"))

    async def create(self, document: dict[str, Any], visibility: str = "sync") -> str:
        if self.fail_create:
            raise ExternalServiceError("Content store update failed")
        document_id = f"doc-{len(self.created) + 1}"
        self.created[document_id] = dict(document)
        return document_id

    async def patch(
        self,
        document_id: str,
        set_fields: Optional[dict[str, Any]] = None,
        set_if_missing: Optional[dict[str, Any]] = None,
        inc: Optional[dict[str, int]] = None,
        visibility: str = "sync",
    ) -> None:
        if self.fail_patch:
            raise ExternalServiceError("Content store update failed")
        self.patches.append(
            {
                "id": document_id,
                "set": set_fields or {},
                "setIfMissing": set_if_missing or {},
                "inc": inc or {},
                "visibility": visibility,
            }
        )
        if document_id in self.created and set_fields:
            self.created[document_id].update(set_fields)
        if document_id in self.coupons and inc:
            for key, amount in inc.items():
                self.coupons[document_id][key] = self.coupons[document_id].get(key, 0) + amount


class FakeGateway(PaymentGateway):
    """Records processor calls and answers with deterministic ids."""

    def __init__(self) -> None:
        self.customers: dict[str, str] = {}
        self.products: list[dict[str, Any]] = []
        self.prices: list[dict[str, Any]] = []
        self.sessions: list[dict[str, Any]] = []
        self.subscriptions: dict[str, ProcessorSubscription] = {}
        self.cancel_calls: list[str] = []
        self.schedule_calls: list[str] = []
        self.missing: set[str] = set()

    async def find_or_create_customer(self, email: str, user_id: str) -> str:
        if email not in self.customers:
            self.customers[email] = f"cus_{len(self.customers) + 1:04d}"
        return self.customers[email]

    async def create_product(self, name: str, metadata: dict[str, str]) -> str:
        product_id = f"prod_{len(self.products) + 1:04d}"
        self.products.append({"id": product_id, "name": name, "metadata": metadata})
        return product_id

    async def create_price(
        self,
        product_id: str,
        unit_amount: int,
        interval: IntervalConfig,
        metadata: dict[str, str],
    ) -> str:
        price_id = f"price_{len(self.prices) + 1:04d}"
        self.prices.append(
            {
                "id": price_id,
                "product": product_id,
                "unit_amount": unit_amount,
                "recurring": interval.as_recurring(),
                "metadata": metadata,
            }
        )
        return price_id

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        client_reference_id: str,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
    ) -> CheckoutSession:
        session_id = f"cs_test_{len(self.sessions) + 1:04d}"
        self.sessions.append(
            {
                "id": session_id,
                "customer": customer_id,
                "price": price_id,
                "client_reference_id": client_reference_id,
                "metadata": metadata,
                "subscription_metadata": subscription_metadata,
            }
        )
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        if subscription_id in self.missing or subscription_id not in self.subscriptions:
            raise ProcessorResourceMissing()
        return self.subscriptions[subscription_id]

    async def cancel_now(self, subscription_id: str) -> ProcessorSubscription:
        self.cancel_calls.append(subscription_id)
        if subscription_id in self.missing:
            raise ProcessorResourceMissing()
        return ProcessorSubscription(id=subscription_id, status="canceled")

    async def cancel_at_period_end(self, subscription_id: str) -> ProcessorSubscription:
        self.schedule_calls.append(subscription_id)
        if subscription_id in self.missing:
            raise ProcessorResourceMissing()
        current = self.subscriptions.get(subscription_id)
        return ProcessorSubscription(
            id=subscription_id,
            status="active",
            cancel_at_period_end=True,
            current_period_end=current.current_period_end if current else None,
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        if signature != "valid-signature":
            raise Unauthorized("Invalid signature")
        return json.loads(payload)


class FakeCRM(CRMSink):
    def __init__(self) -> None:
        self.contacts: list[dict[str, Any]] = []

    async def upsert_contact(self, contact: dict[str, Any]) -> dict[str, Any]:
        self.contacts.append(contact)
        return {"contact": {"id": f"ghl-{len(self.contacts)}"}}


class FakeAdSink(AdEventSink):
    def __init__(self, configured: bool = True) -> None:
        self._configured = configured
        self.events: list[ConversionEvent] = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def send_event(self, event: ConversionEvent) -> None:
        self.events.append(event)


# ----------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------


@pytest.fixture
async def engine():
    """Create async engine for tests with SQLite in-memory database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,  # StaticPool for in-memory SQLite
        connect_args={"check_same_thread": False},  # Required for SQLite
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ----------------------------------------------------------------------
# External systems
# ----------------------------------------------------------------------


@pytest.fixture
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def ads() -> FakeAdSink:
    return FakeAdSink()


@pytest.fixture
def tasks() -> DetachedTasks:
    return DetachedTasks()


# ----------------------------------------------------------------------
# Catalog documents
# ----------------------------------------------------------------------


def subscription_document(**overrides: Any) -> dict[str, Any]:
    """A catalog subscription as returned by the GROQ projection."""
    document = {
        "_id": "sub-plan-semaglutide",
        "title": "Semaglutide Weight Loss",
        "price": 100,
        "billingPeriod": "monthly",
        "customBillingPeriodMonths": None,
        "stripePriceId": None,
        "stripeProductId": None,
        "hasVariants": False,
        "variants": None,
        "appointmentAccess": True,
        "appointmentDiscountPercentage": 10,
        "allowCoupons": True,
        "excludedCoupons": None,
        "isActive": True,
        "isDeleted": False,
    }
    document.update(overrides)
    return document


def variant_subscription_document(**overrides: Any) -> dict[str, Any]:
    """Plan with a $50 monthly variant and a default $120 three-month variant."""
    return subscription_document(
        _id="sub-plan-tirzepatide",
        title="Tirzepatide Weight Loss",
        price=75,
        hasVariants=True,
        variants=[
            {"_key": "monthly", "title": "Monthly", "price": 50, "billingPeriod": "monthly", "isDefault": False},
            {"_key": "quarterly", "title": "3 Months", "price": 120, "billingPeriod": "three_month", "isDefault": True},
        ],
        **overrides,
    )


def coupon_document(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    document = {
        "_id": "coupon-save20",
        "code": "SAVE20",
        "discountType": "percentage",
        "discountValue": 20,
        "applicationType": "all",
        "applicableSubscriptions": None,
        "usageLimit": None,
        "usageCount": 0,
        "validFrom": (now - timedelta(days=1)).isoformat(),
        "validUntil": (now + timedelta(days=30)).isoformat(),
        "isActive": True,
        "minimumPurchaseAmount": None,
    }
    document.update(overrides)
    return document


# ----------------------------------------------------------------------
# Users and records
# ----------------------------------------------------------------------


def make_access_token(
    user_id: str = USER_ID,
    email: Optional[str] = USER_EMAIL,
    expires_in: int = 1800,
    audience: str = "authenticated",
) -> str:
    claims: dict[str, Any] = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.SUPABASE_JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id=USER_ID, email=USER_EMAIL)


@pytest.fixture
def make_record(db_session: AsyncSession):
    """Factory inserting a subscription row directly."""

    async def _make(**overrides: Any) -> UserSubscription:
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "user_id": uuid.UUID(USER_ID),
            "user_email": USER_EMAIL,
            "sanity_id": "doc-existing",
            "sanity_subscription_id": "sub-plan-semaglutide",
            "plan_name": "Semaglutide Weight Loss",
            "stripe_session_id": f"cs_test_{uuid.uuid4().hex[:8]}",
            "stripe_customer_id": "cus_0001",
            "stripe_subscription_id": None,
            "billing_amount": Decimal("100.00"),
            "billing_period": "monthly",
            "status": SubscriptionStatus.PENDING.value,
            "is_active": False,
            "is_deleted": False,
            "start_date": datetime(2026, 1, 1, 12, 0, 0),
        }
        values.update(overrides)
        record = UserSubscription(**values)
        db_session.add(record)
        await db_session.commit()
        await db_session.refresh(record)
        return record

    return _make


# ----------------------------------------------------------------------
# HTTP client
# ----------------------------------------------------------------------


@pytest.fixture
async def async_client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    store: FakeDocumentStore,
    gateway: FakeGateway,
    crm: FakeCRM,
    ads: FakeAdSink,
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database and external system overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_crm] = lambda: crm
    app.dependency_overrides[get_ad_sink] = lambda: ads
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def authenticated_async_client(async_client: AsyncClient) -> AsyncClient:
    """Create an async test client carrying a valid access token."""
    async_client.headers.update({"Authorization": f"Bearer {make_access_token()}"})
    return async_client
