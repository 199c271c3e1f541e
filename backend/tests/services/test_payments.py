"""Tests for the Stripe gateway helpers and webhook verification."""

import hmac
import json
import time
from datetime import datetime
from hashlib import sha256

import pytest
import stripe

from telehealth.core.errors import ExternalServiceError, ProcessorResourceMissing, Unauthorized, ValidationError
from telehealth.services.payments import ProcessorSubscription, StripeGateway, from_unix

WEBHOOK_SECRET = "whsec_unit_test"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, app_url="https://app.example.com/")


class TestProcessorSubscription:
    def test_period_end_on_subscription(self):
        subscription = ProcessorSubscription.from_payload(
            {"id": "sub_1", "status": "active", "customer": "cus_1", "current_period_end": 1798761600}
        )

        assert subscription.current_period_end == datetime(2027, 1, 1)
        assert subscription.customer_id == "cus_1"

    def test_period_end_on_items(self):
        subscription = ProcessorSubscription.from_payload(
            {"id": "sub_1", "status": "active", "items": {"data": [{"current_period_end": 1798761600}]}}
        )

        assert subscription.current_period_end == datetime(2027, 1, 1)

    def test_expanded_customer_and_metadata(self):
        subscription = ProcessorSubscription.from_payload(
            {
                "id": "sub_1",
                "status": "canceled",
                "customer": {"id": "cus_9"},
                "canceled_at": 1798761600,
                "cancel_at_period_end": True,
                "metadata": {"userSubscriptionId": "abc"},
            }
        )

        assert subscription.customer_id == "cus_9"
        assert subscription.ended_at == datetime(2027, 1, 1)
        assert subscription.cancel_at_period_end is True
        assert subscription.metadata == {"userSubscriptionId": "abc"}

    def test_from_unix_empty(self):
        assert from_unix(None) is None
        assert from_unix(0) is None


class TestConstructEvent:
    def test_valid_signature(self, stripe_gateway):
        payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}).encode("utf-8")

        event = stripe_gateway.construct_event(payload, sign(payload))

        assert event["type"] == "invoice.paid"

    def test_missing_signature(self, stripe_gateway):
        with pytest.raises(Unauthorized):
            stripe_gateway.construct_event(b"{}", None)

    def test_wrong_secret(self, stripe_gateway):
        payload = b'{"id": "evt_1"}'

        with pytest.raises(Unauthorized) as exc_info:
            stripe_gateway.construct_event(payload, sign(payload, secret="whsec_other"))

        assert exc_info.value.message == "Invalid signature"

    def test_tampered_body(self, stripe_gateway):
        payload = b'{"id": "evt_1", "amount": 100}'
        signature = sign(payload)

        with pytest.raises(Unauthorized):
            stripe_gateway.construct_event(b'{"id": "evt_1", "amount": 1}', signature)

    def test_stale_timestamp(self, stripe_gateway):
        payload = b'{"id": "evt_1"}'

        with pytest.raises(Unauthorized):
            stripe_gateway.construct_event(payload, sign(payload, timestamp=int(time.time()) - 3600))

    def test_signed_non_json(self, stripe_gateway):
        payload = b"not json"

        with pytest.raises(ValidationError):
            stripe_gateway.construct_event(payload, sign(payload))


class TestStripeCalls:
    @pytest.mark.asyncio
    async def test_existing_customer_reused(self, stripe_gateway, monkeypatch):
        """Test that SDK calls run off the event loop with the gateway's key."""
        calls = []

        def list_customers(**params):
            calls.append(params)
            return {"data": [{"id": "cus_existing"}]}

        monkeypatch.setattr(stripe.Customer, "list", list_customers)

        customer_id = await stripe_gateway.find_or_create_customer("patient@example.com", "user-1")

        assert customer_id == "cus_existing"
        assert calls == [{"api_key": "sk_test_dummy", "email": "patient@example.com", "limit": 1}]

    @pytest.mark.asyncio
    async def test_missing_resource(self, stripe_gateway, monkeypatch):
        def retrieve(**params):
            raise stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")

        monkeypatch.setattr(stripe.Subscription, "retrieve", retrieve)

        with pytest.raises(ProcessorResourceMissing):
            await stripe_gateway.retrieve_subscription("sub_gone")

    @pytest.mark.asyncio
    async def test_api_error(self, stripe_gateway, monkeypatch):
        def retrieve(**params):
            raise stripe.APIConnectionError("Network down")

        monkeypatch.setattr(stripe.Subscription, "retrieve", retrieve)

        with pytest.raises(ExternalServiceError):
            await stripe_gateway.retrieve_subscription("sub_any")
