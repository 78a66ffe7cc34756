"""
FastAPI Dependencies - per-request configuration, providers and admin gating.

NO DICTIONARIES - All dependencies return typed objects.
"""

import asyncio
from functools import lru_cache
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from qc_billing.config import ConfigurationError, Settings, get_settings
from qc_billing.db.models import User
from qc_billing.db.session import get_write_db
from qc_billing.models.domain import AlipayConfig
from qc_billing.services.ai_provider import AIProvider
from qc_billing.services.gemini_provider import GeminiProvider
from qc_billing.services.payment_config import PaymentConfigService
from qc_billing.services.retry import RetryPolicy, Sleep

logger = get_logger(__name__)


async def get_alipay_config(db: AsyncSession = Depends(get_write_db)) -> AlipayConfig:
    """Gateway credentials as of this request."""
    return await PaymentConfigService(db).get_alipay_config()


@lru_cache(maxsize=1)
def _gemini_provider(api_key: str) -> GeminiProvider:
    return GeminiProvider(api_key=api_key, settings=get_settings())


def get_ai_provider(settings: Settings = Depends(get_settings)) -> AIProvider:
    """
    Shared Gemini client.

    Raises:
        HTTPException(503): No API key configured
    """
    try:
        return _gemini_provider(settings.gemini_api_key)
    except ConfigurationError as exc:
        logger.error("ai_provider_not_configured", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service is not configured",
        ) from exc


def get_retry_policy(settings: Settings = Depends(get_settings)) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.ai_max_attempts,
        base_delay_seconds=settings.ai_retry_base_delay_seconds,
    )


def get_sleep() -> Sleep:
    """Backoff sleep; overridden in tests."""
    return asyncio.sleep


def get_request_host(request: Request) -> str:
    """Public host for callback URLs, honouring the reverse proxy."""
    return request.headers.get("x-forwarded-host") or request.headers.get("host") or "localhost"


async def require_admin(
    x_user_id: str | None = Header(None),
    db: AsyncSession = Depends(get_write_db),
) -> User:
    """
    Resolve the calling admin from the X-User-ID header.

    Raises:
        HTTPException(401): Header missing or not a UUID
        HTTPException(403): User unknown or not an admin
    """
    if not x_user_id:
        logger.warning("admin_auth_no_user")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    try:
        user_id = UUID(x_user_id)
    except ValueError as exc:
        logger.warning("admin_auth_invalid_user_id")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        ) from exc

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_admin:
        logger.warning("admin_auth_forbidden", user_id=x_user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    return user
