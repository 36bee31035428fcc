"""
API dependencies for admin and webhook authentication.
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.core.security import verify_admin_api_key, verify_webhook_secret

logger = get_logger(__name__)


def require_admin_api_key(
    x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key"),
) -> None:
    """Reject requests without a valid admin API key."""
    if not settings.ADMIN_API_KEY:
        logger.error("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )

    if not x_admin_api_key:
        logger.warning("Admin auth failed: missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key"
        )

    if not verify_admin_api_key(x_admin_api_key):
        logger.warning("Admin auth failed: invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key"
        )


def require_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
) -> None:
    """Check the shared secret on Entra callbacks when one is configured."""
    if not verify_webhook_secret(x_webhook_secret):
        logger.warning("Webhook call rejected: bad shared secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret"
        )
