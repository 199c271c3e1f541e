"""API v1 router configuration."""

from fastapi import APIRouter

from telehealth.api.v1 import facebook, sanity, stripe

api_router = APIRouter()

api_router.include_router(stripe.router, prefix="/stripe", tags=["subscriptions"])
api_router.include_router(sanity.router, prefix="/sanity", tags=["content-webhooks"])
api_router.include_router(facebook.router, prefix="/facebook", tags=["ad-attribution"])
