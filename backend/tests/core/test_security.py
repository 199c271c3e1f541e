"""Tests for security utilities (access tokens, id formats, shared secrets)."""

import pytest

from conftest import USER_EMAIL, USER_ID, make_access_token
from telehealth.core.security import (
    SubscriptionIdKind,
    authenticate_token,
    classify_subscription_id,
    decode_access_token,
    verify_shared_secret,
)


class TestAccessTokens:
    """Test Supabase access token verification."""

    @pytest.mark.asyncio
    async def test_valid_token_resolves_user(self):
        """Test that a valid token yields the user id and email."""
        user = await authenticate_token(make_access_token())

        assert user is not None
        assert user.id == USER_ID
        assert user.email == USER_EMAIL

    @pytest.mark.asyncio
    async def test_token_without_email(self):
        """Test that the email claim is optional."""
        user = await authenticate_token(make_access_token(email=None))

        assert user is not None
        assert user.email is None

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """Test that no token means no user."""
        assert await authenticate_token(None) is None
        assert await authenticate_token("") is None

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self):
        """Test that an expired token is rejected."""
        assert await authenticate_token(make_access_token(expires_in=-60)) is None

    @pytest.mark.asyncio
    async def test_wrong_audience_rejected(self):
        """Test that tokens for another audience are rejected."""
        assert await authenticate_token(make_access_token(audience="anon")) is None

    @pytest.mark.asyncio
    async def test_non_uuid_subject_rejected(self):
        """Test that a subject that is not a UUID is rejected."""
        assert await authenticate_token(make_access_token(user_id="not-a-uuid")) is None

    def test_tampered_token_rejected(self):
        """Test that a token with a modified signature does not decode."""
        token = make_access_token()
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        assert decode_access_token(tampered) is None


class TestSubscriptionIdFormat:
    """Test record id vs processor id classification."""

    def test_record_uuid(self):
        assert classify_subscription_id(USER_ID) == SubscriptionIdKind.RECORD

    def test_uppercase_uuid(self):
        assert classify_subscription_id(USER_ID.upper()) == SubscriptionIdKind.RECORD

    def test_processor_id(self):
        assert classify_subscription_id("sub_1PqRsTuVwXyZ0123") == SubscriptionIdKind.PROCESSOR

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "sub_short",
            "sub_1PqRsTuVwXyZ01-3",
            "cs_test_1PqRsTuVwXyZ0123",
            "3f2b8c1e-4d5a-6b6c-9d7e-8f9a0b1c2d3e",  # version 6 is not accepted
            "'; DROP TABLE user_subscriptions; --",
        ],
    )
    def test_invalid_formats(self, value):
        """Test that anything else is rejected."""
        with pytest.raises(ValueError, match="Invalid subscription ID format"):
            classify_subscription_id(value)


class TestSharedSecret:
    """Test webhook shared secret comparison."""

    def test_matching_secret(self):
        assert verify_shared_secret("hook-value", "hook-value") is True

    def test_mismatched_secret(self):
        assert verify_shared_secret("hook-value", "other-value") is False

    def test_missing_secret(self):
        assert verify_shared_secret(None, "hook-value") is False

    def test_unset_expected_secret_never_verifies(self):
        assert verify_shared_secret("", "") is False
