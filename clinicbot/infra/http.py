"""
Shared HTTP client for outbound provider calls.

One httpx.AsyncClient is reused across requests so connections to the
Meta Graph API and the Twilio REST API are pooled.
"""

import logging
from typing import Optional

import httpx

from clinicbot.config import settings

logger = logging.getLogger(__name__)

_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    return _client


async def close_http_client() -> None:
    """Close the shared HTTP client."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("HTTP client closed")
