"""Content-store (Sanity) webhook endpoint."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Request

from telehealth.api.deps import get_reconciler
from telehealth.core.errors import ValidationError
from telehealth.core.rate_limit import limiter
from telehealth.schemas.subscription import AckResponse
from telehealth.services.reconciler import WebhookReconciler

router = APIRouter()


@router.post("/webhook", response_model=AckResponse)
@limiter.exempt
async def sanity_webhook(
    request: Request,
    reconciler: Annotated[WebhookReconciler, Depends(get_reconciler)],
    x_sanity_webhook_secret: Annotated[Optional[str], Header()] = None,
) -> dict:
    """
    Mirror document deletions into the relational store as soft deletes.

    Deleting a subscription document also soft-deletes its appointments;
    deleting an order also soft-deletes its items.
    """
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationError("Invalid JSON body") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    return await reconciler.handle_content_event(payload, x_sanity_webhook_secret)
