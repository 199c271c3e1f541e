"""Application Configuration using Pydantic Settings."""

import os
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> str:
    """
    Determine which .env file to load based on APP_ENV.

    Returns:
        Path to the .env file to load
    """
    app_env = os.getenv("APP_ENV", "development")
    base_dir = Path(__file__).parent.parent.parent  # backend/

    if app_env == "test":
        env_file = base_dir / ".env.test"
        if env_file.exists():
            return str(env_file)

    if app_env == "production":
        env_file = base_dir / ".env.production"
        if env_file.exists():
            return str(env_file)

    # Default to .env
    return str(base_dir / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Telehealth Commerce"
    APP_ENV: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"
    APP_URL: str = "http://localhost:3000"  # Used for checkout redirect URLs

    # Database
    # Note: Using str instead of PostgresDsn to support SQLite for testing
    DATABASE_URL: str = "sqlite+aiosqlite:///./telehealth.db"

    # Authentication (Supabase-issued access tokens)
    SUPABASE_JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = "authenticated"
    AUTH_COOKIE_NAME: str = "sb-access-token"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    CURRENCY: str = "usd"
    CHECKOUT_LOCALE: str = "en"

    # Sanity content store
    SANITY_PROJECT_ID: str = ""
    SANITY_DATASET: str = "production"
    SANITY_API_VERSION: str = "2024-01-01"
    SANITY_API_TOKEN: str = ""
    SANITY_WEBHOOK_SECRET: str = ""

    # GoHighLevel CRM (optional)
    GHL_INTEGRATION_ENABLED: bool = False
    GHL_API_URL: str = "https://services.leadconnectorhq.com"
    GHL_API_KEY: str = ""
    GHL_LOCATION_ID: str = ""
    GHL_API_VERSION: str = "2021-07-28"
    GHL_PHARMACY_NAME: str = "Akina Pharmacy"

    # Facebook Conversions API (optional)
    FACEBOOK_ACCESS_TOKEN: str = ""
    FACEBOOK_DATASET_ID: str = ""
    FACEBOOK_GRAPH_API_VERSION: str = "v19.0"
    FACEBOOK_EVENTS_BUDGET: str = "50 per 5 minutes"  # Outbound conversion events per window

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_MAX_AGE: int = 600  # Preflight cache duration in seconds

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URL: str = "memory://"
    RATE_LIMIT_PURCHASE: str = "10/minute"  # Checkout session creation
    RATE_LIMIT_CANCEL: str = "5/minute"  # Subscription cancellation
    RATE_LIMIT_TRACK_EVENT: str = "50 per 5 minutes"  # Ad-attribution relay
    RATE_LIMIT_API_DEFAULT: str = "100/minute"  # Default for all API endpoints

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: str | List[str]) -> List[str]:
        """Parse allowed origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("ALLOWED_ORIGINS", mode="after")
    @classmethod
    def validate_cors_origins(cls, origins: List[str]) -> List[str]:
        """
        Validate CORS origins.

        Rules:
        1. No wildcards ("*", "http://*", etc.)
        2. Valid URL format (scheme://host[:port])
        3. No empty or whitespace-only origins
        """
        if not origins:
            raise ValueError("ALLOWED_ORIGINS cannot be empty. At least one origin must be specified.")

        validated_origins = []

        for origin in origins:
            origin = origin.strip()

            if not origin:
                raise ValueError("CORS origin cannot be empty or whitespace-only")

            if "*" in origin:
                raise ValueError(
                    f"CORS origin '{origin}' contains wildcard '*'. Specify exact domains instead."
                )

            parsed = urlparse(origin)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError(
                    f"CORS origin '{origin}' must include scheme and hostname. "
                    f"Example: https://example.com"
                )

            validated_origins.append(origin)

        return validated_origins

    @property
    def sanity_configured(self) -> bool:
        """Whether the content store can be reached."""
        return bool(self.SANITY_PROJECT_ID and self.SANITY_API_TOKEN)


REQUIRED_SECRETS = (
    "SUPABASE_JWT_SECRET",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "SANITY_PROJECT_ID",
    "SANITY_API_TOKEN",
    "SANITY_WEBHOOK_SECRET",
)


def missing_required_settings(config: "Settings") -> list[str]:
    """
    List required settings that are unset or still placeholders.

    Args:
        config: Settings instance to inspect

    Returns:
        Names of the offending settings (empty when configuration is complete)
    """
    placeholder_keywords = ("your-", "change-", "placeholder")
    missing = []
    for name in REQUIRED_SECRETS:
        value = getattr(config, name, "")
        if not value or any(keyword in value.lower() for keyword in placeholder_keywords):
            missing.append(name)
    return missing


# Create global settings instance
settings = Settings()  # type: ignore
