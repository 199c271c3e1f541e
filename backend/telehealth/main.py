"""FastAPI Application Entry Point."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from telehealth.core.background import detached_tasks
from telehealth.core.config import missing_required_settings, settings
from telehealth.core.errors import CommerceError, RateLimited, safe_error_message
from telehealth.core.rate_limit import limiter

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Telehealth subscription checkout and multi-store reconciliation",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Configure rate limiting
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the API's error envelope."""
    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"success": False, "error": RateLimited.default_message},
    )
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": safe_error_message(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are a 400 in this API, not FastAPI's default 422."""
    details = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        details.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": ", ".join(details) or "Invalid request"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": CommerceError.default_message},
    )


# Configure CORS with strict security rules
# - allow_origins: Validated whitelist from settings (no wildcards)
# - allow_methods / allow_headers: Explicit lists
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
        "Stripe-Signature",
        "X-Sanity-Webhook-Secret",
    ],
    max_age=settings.CORS_MAX_AGE,
)


def validate_settings() -> None:
    """
    Validate required secrets at startup.

    Checks that the payment processor key, both webhook secrets, the content
    store credentials and the JWT secret are set and are not placeholders.

    Raises:
        SystemExit: If any required setting is missing
    """
    logger.info("Validating required settings...")

    missing = missing_required_settings(settings)
    if missing:
        for name in missing:
            logger.error(f"{name} is not set or is a placeholder")
        raise SystemExit(1)

    if not settings.GHL_INTEGRATION_ENABLED:
        logger.info("GoHighLevel sync disabled")
    if not (settings.FACEBOOK_ACCESS_TOKEN and settings.FACEBOOK_DATASET_ID):
        logger.info("Facebook Conversions API not configured - purchase events will be skipped")

    logger.info("Required settings validated")


@app.on_event("startup")
async def startup_event() -> None:
    """Run validation checks on application startup."""
    validate_settings()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Let in-flight CRM and ad-attribution tasks finish."""
    if detached_tasks.pending:
        logger.info(f"Waiting for {detached_tasks.pending} background task(s)")
    await detached_tasks.drain()


@app.get("/api/v1/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": settings.APP_NAME,
            "environment": settings.APP_ENV,
        },
    )


# Include API v1 routers
from telehealth.api.v1 import api_router  # noqa: E402

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "telehealth.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
