"""
API key check for the admin endpoints (dead letters, ledger inspection).

Usage:
    @router.get("/dead-letters")
    async def dead_letters(
        _: None = Depends(require_admin_api_key),
    ):
        ...
"""
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from reviewbot.core.config import settings
from reviewbot.core.logging import get_logger

logger = get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)


async def require_admin_api_key(
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """
    401 if the key is missing, 403 if it does not match.
    With ADMIN_API_KEY unset the admin endpoints are closed entirely.
    """
    if not settings.ADMIN_API_KEY:
        logger.warning("Admin endpoint refused, ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_API_KEY is not configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key, header X-Admin-API-Key is required",
        )

    if not hmac.compare_digest(api_key, settings.ADMIN_API_KEY):
        logger.warning("Admin endpoint refused, wrong API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
