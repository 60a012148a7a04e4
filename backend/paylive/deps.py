"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.boxtal_client import BoxtalClient, DEFAULT_BASE_URL, DEFAULT_V1_BASE_URL
from .services.clerk_service import (
    ClerkAuthError,
    ClerkIdentity,
    get_clerk_user,
    identity_from_user,
    verify_session_token,
)
from .services.email_service import EmailService
from .services.stripe_gateway import StripeGateway
from .telemetry import set_customer_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "https://paylive.cc,http://localhost:5173"
    FRONTEND_URL: str = "https://paylive.cc"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Boxtal (v3.1 OAuth client credentials + legacy v1 basic auth)
    BOXTAL_ACCESS_KEY: Optional[str] = None
    BOXTAL_SECRET_KEY: Optional[str] = None
    BOXTAL_API_URL: str = DEFAULT_BASE_URL
    BOXTAL_V1_USER: Optional[str] = None
    BOXTAL_V1_PASSWORD: Optional[str] = None
    BOXTAL_V1_API_URL: str = DEFAULT_V1_BASE_URL
    BOXTAL_WEBHOOK_SECRET: Optional[str] = None

    # Clerk
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_JWT_KEY: Optional[str] = None

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "PayLive <no-reply@paylive.cc>"
    ADMIN_EMAIL: Optional[str] = None
    SHIPPING_CONTACT_EMAIL: str = "contact@paylive.cc"

    # Error tracking
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    # Background jobs
    REDIS_URL: str = "redis://localhost:6379/0"
    SAGA_RETRY_LIMIT: int = 5

    # Shipping label retrieval after order creation
    LABEL_FETCH_ATTEMPTS: int = 2
    LABEL_FETCH_DELAY_SECONDS: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_stripe_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(api_key=settings.STRIPE_SECRET_KEY, webhook_secret=settings.STRIPE_WEBHOOK_SECRET)


@lru_cache()
def get_boxtal_client() -> BoxtalClient:
    """Process-wide Boxtal client; it owns the access token cache."""
    settings = get_settings()
    return BoxtalClient(
        access_key=settings.BOXTAL_ACCESS_KEY,
        secret_key=settings.BOXTAL_SECRET_KEY,
        base_url=settings.BOXTAL_API_URL,
        v1_user=settings.BOXTAL_V1_USER,
        v1_password=settings.BOXTAL_V1_PASSWORD,
        v1_base_url=settings.BOXTAL_V1_API_URL,
    )


def get_email_service() -> EmailService:
    return EmailService.from_settings(get_settings())


async def get_current_identity(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> ClerkIdentity:
    """Resolve the caller from the `Authorization: Bearer <Clerk JWT>` header."""
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else authorization

    try:
        claims = verify_session_token(token.strip(), settings.CLERK_JWT_KEY)
    except ClerkAuthError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = await get_clerk_user(claims["sub"], settings.CLERK_SECRET_KEY)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    identity = identity_from_user(claims["sub"], user)
    if identity.stripe_customer_id:
        set_customer_context(identity.stripe_customer_id, identity.clerk_id)
    return identity


async def get_current_customer(
    identity: ClerkIdentity = Depends(get_current_identity),
) -> ClerkIdentity:
    """Authenticated caller that has a Stripe customer id."""
    if not identity.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No Stripe customer linked to this account",
        )
    return identity
