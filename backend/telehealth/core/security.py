"""Security utilities for caller authentication and webhook verification."""

import hmac
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jose import JWTError, jwt

from telehealth.core.config import settings

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
STRIPE_SUBSCRIPTION_PATTERN = re.compile(r"^sub_[a-zA-Z0-9]{14,}$")


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity extracted from a verified access token."""

    id: str
    email: str | None = None


class SubscriptionIdKind(str, Enum):
    """Which store issued a subscription identifier."""

    RECORD = "record"
    PROCESSOR = "processor"


def classify_subscription_id(value: str) -> SubscriptionIdKind:
    """
    Tell a relational record id from a processor subscription id.

    Record ids are RFC 4122 UUIDs (versions 1-5); processor ids look like
    ``sub_`` followed by at least 14 alphanumerics. Anything else is rejected.

    Args:
        value: Identifier supplied by the caller

    Returns:
        Kind of identifier

    Raises:
        ValueError: If the value matches neither format
    """
    if UUID_PATTERN.match(value):
        return SubscriptionIdKind.RECORD
    if STRIPE_SUBSCRIPTION_PATTERN.match(value):
        return SubscriptionIdKind.PROCESSOR
    raise ValueError("Invalid subscription ID format")


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a Supabase access token.

    Args:
        token: JWT taken from the Authorization header or session cookie

    Returns:
        Decoded token claims or None if invalid
    """
    if not settings.SUPABASE_JWT_SECRET:
        return None
    try:
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except JWTError:
        return None


async def authenticate_token(token: str | None) -> AuthenticatedUser | None:
    """
    Resolve the caller behind an access token.

    Args:
        token: Raw access token, if the request carried one

    Returns:
        AuthenticatedUser, or None when the token is absent or invalid
    """
    if not token:
        return None

    claims = decode_access_token(token)
    if not claims or not claims.get("sub"):
        return None

    try:
        user_id = str(uuid.UUID(str(claims["sub"])))
    except ValueError:
        return None

    return AuthenticatedUser(id=user_id, email=claims.get("email") or None)


def verify_shared_secret(provided: str | None, expected: str) -> bool:
    """
    Compare a webhook shared secret in constant time.

    An unset expected secret never verifies.
    """
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
