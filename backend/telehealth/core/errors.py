"""Error taxonomy for the purchase and reconciliation workflows."""

import re

from fastapi import status

_SENSITIVE_WORDS = re.compile(r"\b(?:password|token|secret|key)s?\b", re.IGNORECASE)
_API_CREDENTIALS = re.compile(r"\b(?:sk|rk|pk|whsec)_[A-Za-z0-9_]+")
_LONG_NUMBERS = re.compile(r"\b\d{4,}\b")


class CommerceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(CommerceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class Unauthorized(CommerceError):
    """Webhook signature or shared secret mismatch."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized"


class Forbidden(CommerceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class NotFound(CommerceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class SubscriptionNotFound(NotFound):
    default_message = "Subscription plan not found"


class VariantNotFound(NotFound):
    default_message = "Selected variant not found"


class RecordNotFound(NotFound):
    default_message = "Subscription not found"


class ValidationError(CommerceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class InvalidCoupon(CommerceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid coupon code"


class CouponNotFound(InvalidCoupon):
    default_message = "Coupon not found or inactive"


class CouponExpired(InvalidCoupon):
    default_message = "Coupon has expired or is not yet valid"


class CouponExhausted(InvalidCoupon):
    default_message = "Coupon usage limit exceeded"


class MinimumNotMet(InvalidCoupon):
    default_message = "Minimum purchase amount not met"


class CouponNotApplicable(InvalidCoupon):
    default_message = "Coupon not applicable to this subscription"


class RateLimited(CommerceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Rate limit exceeded. Please try again later."


class ExternalServiceError(CommerceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "External service request failed"


class ProcessorResourceMissing(ExternalServiceError):
    """The payment processor no longer knows the referenced object."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Payment processor resource not found"


class PersistenceError(CommerceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Failed to save subscription"


def safe_error_message(error: BaseException) -> str:
    """
    Build a client-safe message for an error.

    API credentials, words that hint at credentials and numeric runs of
    four or more digits are replaced with ``[REDACTED]``.

    Args:
        error: Exception to describe

    Returns:
        Redacted message
    """
    if isinstance(error, CommerceError):
        message = error.message
    elif str(error):
        message = str(error)
    else:
        return CommerceError.default_message

    message = _API_CREDENTIALS.sub("[REDACTED]", message)
    message = _SENSITIVE_WORDS.sub("[REDACTED]", message)
    return _LONG_NUMBERS.sub("[REDACTED]", message)
