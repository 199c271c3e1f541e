"""Tests for the GoHighLevel CRM sync."""

import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from conftest import USER_EMAIL, FakeCRM
from telehealth.core.errors import ExternalServiceError
from telehealth.models.user_data import UserData
from telehealth.services.crm import (
    CustomerSnapshot,
    GoHighLevelClient,
    build_custom_fields,
    extract_medication_type,
    format_phone_e164,
    sync_customer,
)

SNAPSHOT = CustomerSnapshot(
    user_email=USER_EMAIL,
    plan_name="Tirzepatide Weight Loss",
    billing_amount=Decimal("120.00"),
    billing_period="three_month",
    status="active",
    start_date=datetime(2026, 1, 1, 12, 0, 0),
    stripe_subscription_id="sub_1PqRsTuVwXyZ0123",
    stripe_customer_id="cus_0001",
)


class TestPhoneFormat:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("1-555-123-4567", "+15551234567"),
            ("+1 555 123 4567", "+15551234567"),
        ],
    )
    def test_valid_numbers(self, raw, expected):
        assert format_phone_e164(raw) == expected

    @pytest.mark.parametrize("raw", ["", "12345", "25551234567", "+44 20 7946 0958"])
    def test_invalid_numbers(self, raw):
        with pytest.raises(ValueError):
            format_phone_e164(raw)


class TestCustomFields:
    def test_medication_type(self):
        assert extract_medication_type("Tirzepatide Weight Loss") == "Tirzepatide"
        assert extract_medication_type("semaglutide starter") == "Semaglutide"
        assert extract_medication_type(None) == "Unknown"

    def test_fields(self):
        fields = build_custom_fields(SNAPSHOT, 3, datetime(2026, 4, 1), "Akina Pharmacy")
        values = {field["key"]: field["value"] for field in fields}

        assert values["stripe_medication_type"] == "Tirzepatide"
        assert values["stripe_billing_amount"] == "120.00"
        assert values["stripe_dose_level"] == "3"
        assert values["stripe_next_billing_date"] == "2026-04-01T00:00:00"
        assert values["stripe_pharmacy_name"] == "Akina Pharmacy"

    def test_empty_values_dropped(self):
        fields = build_custom_fields(SNAPSHOT, 1, None, "")
        keys = {field["key"] for field in fields}

        assert "stripe_next_billing_date" not in keys
        assert "stripe_pharmacy_name" not in keys


class TestGoHighLevelClient:
    @pytest.mark.asyncio
    async def test_upsert(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"contact": {"id": "ghl-1"}})

        client = GoHighLevelClient(
            api_url="https://ghl.test/",
            api_key="ghl-credential",
            location_id="loc-1",
            transport=httpx.MockTransport(handler),
        )

        response = await client.upsert_contact({"email": USER_EMAIL})

        assert response == {"contact": {"id": "ghl-1"}}
        assert captured["url"] == "https://ghl.test/contacts/upsert"
        assert captured["headers"]["Authorization"] == "Bearer ghl-credential"
        assert captured["headers"]["Version"] == "2021-07-28"
        assert captured["body"] == {"email": USER_EMAIL, "locationId": "loc-1"}

    @pytest.mark.asyncio
    async def test_disabled(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = GoHighLevelClient("https://ghl.test", "k", "loc", enabled=False, transport=httpx.MockTransport(handler))

        assert await client.upsert_contact({"email": USER_EMAIL}) == {"message": "GHL disabled"}

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        client = GoHighLevelClient("https://ghl.test", "", "")

        with pytest.raises(ExternalServiceError):
            await client.upsert_contact({"email": USER_EMAIL})

    @pytest.mark.asyncio
    async def test_api_error(self):
        client = GoHighLevelClient(
            "https://ghl.test",
            "k",
            "loc",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "bad"})),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.upsert_contact({"email": USER_EMAIL})

        assert exc_info.value.message == "GHL API error: 422"


class TestSyncCustomer:
    @pytest.mark.asyncio
    async def test_sync(self, db_session, session_factory):
        db_session.add(UserData(email=USER_EMAIL.upper(), first_name="Ada", last_name="Lovelace", phone="5551234567"))
        await db_session.commit()
        crm = FakeCRM()

        await sync_customer(session_factory, crm, SNAPSHOT, datetime(2026, 4, 1), pharmacy_name="Test Pharmacy")

        contact = crm.contacts[0]
        assert contact["firstName"] == "Ada"
        assert contact["phone"] == "+15551234567"
        assert contact["tags"] == ["stripe", "customer"]
        assert contact["source"] == "Stripe - Customer Purchase"
        assert {"key": "stripe_dose_level", "value": "1"} in contact["customFields"]

    @pytest.mark.asyncio
    async def test_invalid_phone_omitted(self, db_session, session_factory):
        db_session.add(UserData(email=USER_EMAIL, first_name="Ada", phone="12345"))
        await db_session.commit()
        crm = FakeCRM()

        await sync_customer(session_factory, crm, SNAPSHOT, None)

        assert "phone" not in crm.contacts[0]

    @pytest.mark.asyncio
    async def test_missing_user_data(self, session_factory):
        with pytest.raises(LookupError):
            await sync_customer(session_factory, FakeCRM(), SNAPSHOT, None)
