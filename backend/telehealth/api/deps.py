"""API dependencies: caller identity and service construction."""

from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth.core.config import settings
from telehealth.core.database import AsyncSessionLocal, get_db
from telehealth.core.errors import Unauthenticated
from telehealth.core.security import AuthenticatedUser, authenticate_token
from telehealth.services.ad_attribution import AdEventSink, FacebookConversionsClient
from telehealth.services.checkout import CheckoutOrchestrator
from telehealth.services.crm import CRMSink, GoHighLevelClient
from telehealth.services.payments import PaymentGateway, StripeGateway
from telehealth.services.reconciler import WebhookReconciler
from telehealth.services.sanity_client import DocumentStore, SanityClient


def get_access_token(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    """
    Extract the caller's access token.

    A ``Bearer`` Authorization header wins over the session cookie.
    """
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return request.cookies.get(settings.AUTH_COOKIE_NAME) or None


async def get_current_user(
    request: Request,
    token: Annotated[Optional[str], Depends(get_access_token)],
) -> AuthenticatedUser:
    """
    Resolve the authenticated caller.

    Raises:
        Unauthenticated: Missing or invalid token
    """
    user = await authenticate_token(token)
    if user is None:
        raise Unauthenticated()
    # Rate limiting keys on the user once known
    request.state.user = user
    return user


async def get_identified_token(
    request: Request,
    token: Annotated[Optional[str], Depends(get_access_token)],
) -> Optional[str]:
    """
    Access token for routes that authenticate inside the service layer.

    A valid token only records the caller for rate limiting; rejecting a
    missing or invalid one is left to the service.
    """
    user = await authenticate_token(token)
    if user is not None:
        request.state.user = user
    return token


@lru_cache
def get_document_store() -> DocumentStore:
    return SanityClient.from_settings()


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return StripeGateway.from_settings()


@lru_cache
def get_crm() -> CRMSink:
    return GoHighLevelClient.from_settings()


@lru_cache
def get_ad_sink() -> AdEventSink:
    # One instance per process so the outbound event budget is shared
    return FacebookConversionsClient.from_settings()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return AsyncSessionLocal


def get_checkout_orchestrator(
    db: Annotated[AsyncSession, Depends(get_db)],
    store: Annotated[DocumentStore, Depends(get_document_store)],
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(db, store, gateway)


def get_reconciler(
    db: Annotated[AsyncSession, Depends(get_db)],
    store: Annotated[DocumentStore, Depends(get_document_store)],
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    crm: Annotated[CRMSink, Depends(get_crm)],
    ads: Annotated[AdEventSink, Depends(get_ad_sink)],
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> WebhookReconciler:
    return WebhookReconciler(db, store, gateway, crm, ads, session_factory=session_factory)
