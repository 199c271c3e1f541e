"""Stripe subscription purchase, cancellation and webhook endpoints."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from telehealth.api.deps import (
    get_checkout_orchestrator,
    get_current_user,
    get_identified_token,
    get_payment_gateway,
    get_reconciler,
)
from telehealth.core.rate_limit import cancel_limit, limiter, purchase_limit
from telehealth.core.security import AuthenticatedUser
from telehealth.schemas.subscription import (
    AckResponse,
    PurchaseMetadata,
    SubscriptionCancelRequest,
    SubscriptionCancelResponse,
    SubscriptionPurchaseRequest,
    SubscriptionPurchaseResponse,
)
from telehealth.services.checkout import CheckoutOrchestrator, PurchaseRequest
from telehealth.services.payments import PaymentGateway
from telehealth.services.reconciler import WebhookReconciler

router = APIRouter()


@router.post(
    "/subscriptions",
    response_model=SubscriptionPurchaseResponse,
    response_model_exclude_none=True,
)
@purchase_limit
async def purchase_subscription(
    request: Request,
    response: Response,
    purchase: SubscriptionPurchaseRequest,
    access_token: Annotated[Optional[str], Depends(get_identified_token)],
    orchestrator: Annotated[CheckoutOrchestrator, Depends(get_checkout_orchestrator)],
) -> SubscriptionPurchaseResponse:
    """
    Open a Stripe checkout session for a subscription plan.

    Authentication is enforced alongside the catalog lookup so both run
    concurrently; the token dependency only records the caller for rate
    limiting.

    Returns:
        Checkout session id, hosted checkout URL and pricing metadata
    """
    result = await orchestrator.purchase(
        PurchaseRequest(
            subscription_id=purchase.subscription_id,
            user_id=str(purchase.user_id),
            user_email=str(purchase.user_email),
            variant_key=purchase.variant_key,
            coupon_code=purchase.coupon_code,
        ),
        access_token,
    )
    return SubscriptionPurchaseResponse(
        session_id=result.session_id,
        url=result.url,
        metadata=PurchaseMetadata.model_validate(result.metadata),
    )


@router.post("/subscriptions/cancel", response_model=SubscriptionCancelResponse)
@cancel_limit
async def cancel_subscription(
    request: Request,
    response: Response,
    cancel: SubscriptionCancelRequest,
    current_user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    reconciler: Annotated[WebhookReconciler, Depends(get_reconciler)],
) -> SubscriptionCancelResponse:
    """
    Cancel one of the caller's subscriptions, immediately or at period end.

    Cancelling an already-cancelled subscription succeeds without contacting
    Stripe again.
    """
    outcome = await reconciler.cancel(cancel.subscription_id, current_user, immediate=cancel.immediate)
    return SubscriptionCancelResponse(
        message=outcome.message,
        status=outcome.status,
        cancelled_immediately=outcome.cancelled_immediately,
    )


@router.post("/webhook", response_model=AckResponse)
@limiter.exempt
async def stripe_webhook(
    request: Request,
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    reconciler: Annotated[WebhookReconciler, Depends(get_reconciler)],
    stripe_signature: Annotated[Optional[str], Header()] = None,
) -> dict:
    """
    Receive Stripe webhook events.

    The signature is verified against the raw body before anything is read.
    """
    payload = await request.body()
    event = gateway.construct_event(payload, stripe_signature)
    return await reconciler.handle_event(event)
