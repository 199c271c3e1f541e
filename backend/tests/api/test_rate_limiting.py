"""Tests for rate limiting functionality."""

import uuid

import pytest
from fastapi import status
from httpx import AsyncClient

from conftest import OTHER_USER_ID, USER_EMAIL, USER_ID, make_access_token
from telehealth.core.config import settings
from telehealth.core.rate_limit import get_client_identifier, limiter


def parse_rate_limit(limit_str: str) -> tuple[int, int]:
    """
    Parse rate limit string like "5/minute" into (count, seconds).

    Args:
        limit_str: Rate limit string (e.g., "5/minute", "100/hour")

    Returns:
        Tuple of (max_requests, time_window_seconds)
    """
    count, period = limit_str.split("/")

    period_map = {
        "second": 1,
        "minute": 60,
        "hour": 3600,
        "day": 86400,
    }

    return int(count), period_map.get(period, 60)


@pytest.fixture
def rate_limiting():
    """Enable the limiter for one test with a clean counter store."""
    limiter.reset()
    limiter.enabled = True
    yield limiter
    limiter.enabled = False
    limiter.reset()


class TestCancelRateLimiting:
    """Test rate limiting for the cancellation endpoint."""

    @pytest.mark.asyncio
    async def test_cancel_rate_limit(self, rate_limiting, authenticated_async_client: AsyncClient) -> None:
        """
        Test that cancellation is rate limited per user.

        Requests within the limit reach the handler (404 for unknown ids),
        the next one is rejected with 429 and rate limit headers.
        """
        max_requests, _ = parse_rate_limit(settings.RATE_LIMIT_CANCEL)

        for i in range(max_requests):
            response = await authenticated_async_client.post(
                "/api/v1/stripe/subscriptions/cancel",
                json={"subscriptionId": str(uuid.uuid4())},
            )
            assert response.status_code == status.HTTP_404_NOT_FOUND, f"Request {i + 1}/{max_requests} was limited"

        response = await authenticated_async_client.post(
            "/api/v1/stripe/subscriptions/cancel",
            json={"subscriptionId": str(uuid.uuid4())},
        )

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.json() == {"success": False, "error": "Rate limit exceeded. Please try again later."}
        assert "X-RateLimit-Limit" in response.headers
        assert "X-RateLimit-Remaining" in response.headers

    @pytest.mark.asyncio
    async def test_limits_are_per_user(self, rate_limiting, authenticated_async_client: AsyncClient) -> None:
        """Test that one user exhausting the limit does not block another."""
        max_requests, _ = parse_rate_limit(settings.RATE_LIMIT_CANCEL)
        for _ in range(max_requests + 1):
            await authenticated_async_client.post(
                "/api/v1/stripe/subscriptions/cancel",
                json={"subscriptionId": str(uuid.uuid4())},
            )

        response = await authenticated_async_client.post(
            "/api/v1/stripe/subscriptions/cancel",
            json={"subscriptionId": str(uuid.uuid4())},
            headers={"Authorization": f"Bearer {make_access_token(user_id=OTHER_USER_ID)}"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestPurchaseRateLimiting:
    """Test rate limiting for the purchase endpoint."""

    @pytest.mark.asyncio
    async def test_purchase_limit_is_per_user(self, rate_limiting, authenticated_async_client: AsyncClient) -> None:
        """Test that callers sharing an address have separate purchase budgets."""
        max_requests, _ = parse_rate_limit(settings.RATE_LIMIT_PURCHASE)
        body = {"subscriptionId": "sub-plan-unknown", "userId": USER_ID, "userEmail": USER_EMAIL}

        for i in range(max_requests):
            response = await authenticated_async_client.post("/api/v1/stripe/subscriptions", json=body)
            assert response.status_code == status.HTTP_404_NOT_FOUND, f"Request {i + 1}/{max_requests} was limited"

        response = await authenticated_async_client.post("/api/v1/stripe/subscriptions", json=body)
        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS

        response = await authenticated_async_client.post(
            "/api/v1/stripe/subscriptions",
            json={**body, "userId": OTHER_USER_ID},
            headers={"Authorization": f"Bearer {make_access_token(user_id=OTHER_USER_ID)}"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestWebhookExemption:
    @pytest.mark.asyncio
    async def test_webhooks_not_limited(self, rate_limiting, async_client: AsyncClient) -> None:
        """Test that processor webhooks are never throttled."""
        for _ in range(120):
            response = await async_client.post(
                "/api/v1/stripe/webhook",
                content=b"{}",
                headers={"Stripe-Signature": "forged"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestClientIdentifier:
    def test_user_identifier(self):
        class State:
            user = type("User", (), {"id": "abc"})()

        request = type("Request", (), {"state": State(), "headers": {}})()

        assert get_client_identifier(request) == "user:abc"

    def test_forwarded_identifier(self):
        class State:
            pass

        request = type("Request", (), {"state": State(), "headers": {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}})()

        assert get_client_identifier(request) == "ip:203.0.113.7"
