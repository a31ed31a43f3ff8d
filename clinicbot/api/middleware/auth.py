"""
Internal Secret Authentication

Service-to-service endpoints (bot, messaging, scheduling, jobs) require
the shared secret in the x-internal-secret header. An unset secret
rejects every call.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from clinicbot.config import Settings, get_settings

logger = logging.getLogger(__name__)

internal_secret_header = APIKeyHeader(name="x-internal-secret", auto_error=False)


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; empty values never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_internal_secret(
    secret: Optional[str] = Security(internal_secret_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    FastAPI dependency guarding internal endpoints.

    Raises:
        HTTPException: 401 if the header is missing or does not match
    """
    if not secrets_match(secret, settings.internal_function_secret):
        logger.warning("Rejected internal call: invalid x-internal-secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
