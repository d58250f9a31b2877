"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Trial lifecycle
    TRIAL_LENGTH_DAYS: int = 7
    # expired → scheduled_for_deletion delay
    EXPIRY_GRACE_PERIOD_DAYS: int = 1
    # Sweeper only deletes trials that ended more than this long ago
    DELETION_GRACE_PERIOD_DAYS: int = 1

    # Execution limits
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    SWEEPER_MAX_WORKERS: int = 4
    RECONCILE_MAX_RETRIES: int = 3
    STALE_STATE_MINUTES: int = 90

    # External workspace provider
    WORKSPACE_API_URL: str = ""
    WORKSPACE_ADMIN_USERNAME: str = ""
    WORKSPACE_ADMIN_PASSWORD: str = ""

    # Identity provider (Clerk)
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_WEBHOOK_SECRET: Optional[str] = None

    # Billing provider (Stripe)
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Header secret for /admin endpoints
    ADMIN_SECRET: str = ""

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_reconciler():
    """Reconciler bound to the process-wide session factory and wall clock."""
    from .database import SessionLocal
    from .services.reconciler import Reconciler

    return Reconciler(SessionLocal, settings=get_settings())


def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> UUID:
    """Resolve the caller's user id from a session JWT.

    Accepts either an `Authorization: Bearer <jwt>` header or the
    `access_token` cookie (same "Bearer <jwt>" format). The `sub` claim
    carries the opaque user id.
    """
    raw = authorization or access_token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if raw.startswith("Bearer "):
        token = raw[len("Bearer ") :]
    else:
        token = raw

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    try:
        return UUID(str(subject))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")


def verify_admin_secret(
    x_admin_secret: str = Header(..., alias="X-Admin-Secret"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify the admin secret header for /admin endpoints.

    Returns:
        True if secret is valid

    Raises:
        HTTPException: 503 if ADMIN_SECRET is not configured, 401 if invalid
    """
    if not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured",
        )
    if x_admin_secret != settings.ADMIN_SECRET:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin secret")
    return True


def get_metrics_reporter():
    """Metrics reporter bound to the process-wide session factory."""
    from .database import SessionLocal
    from .services.metrics_reporter import MetricsReporter

    return MetricsReporter(SessionLocal, settings=get_settings())
