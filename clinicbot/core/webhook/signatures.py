"""
Webhook authenticity checks.

Meta signs the raw body with HMAC-SHA256 using the app secret. Twilio
signs the public URL plus the sorted form parameters with HMAC-SHA1
using the account auth token. Every comparison is constant-time.
"""

import hashlib
import hmac
import logging
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

META_SIGNATURE_PREFIX = "sha256="


def compute_meta_signature(raw_body: bytes, app_secret: str) -> str:
    """X-Hub-Signature-256 value for a body: "sha256=<hex>"."""
    digest = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{META_SIGNATURE_PREFIX}{digest}"


def verify_meta_signature(raw_body: bytes, signature: Optional[str], app_secret: str) -> bool:
    """Check X-Hub-Signature-256 against the raw request body."""
    if not signature or not app_secret:
        return False
    expected = compute_meta_signature(raw_body, app_secret)
    return hmac.compare_digest(expected, signature.strip())


def verify_twilio_signature(
    url: str,
    params: Mapping[str, str],
    signature: Optional[str],
    auth_token: Optional[str],
) -> bool:
    """Check X-Twilio-Signature for a form-encoded request."""
    if not signature or not auth_token:
        return False
    validator = RequestValidator(auth_token)
    return validator.validate(url, dict(params), signature)


def verify_token(provided: Optional[str], expected: Optional[str]) -> bool:
    """Shared-token check. An unset expected token rejects everything."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
