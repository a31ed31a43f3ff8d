"""
Phone number utilities.

Default country comes from settings (Honduras, +504). Examples:
- "whatsapp:+50493133496" -> "+50493133496"
- "50493133496"           -> "+50493133496"
- "93133496"              -> "+50493133496"
- " 9313-3496 "           -> "+50493133496"
"""

import re
from typing import Optional

from clinicbot.config import settings

_NON_DIGITS = re.compile(r"\D")
_WHATSAPP_PREFIX = re.compile(r"^whatsapp:", re.IGNORECASE)

LOCAL_NUMBER_MAX_DIGITS = 8


def normalize_to_e164(phone: Optional[str], country_code: Optional[str] = None) -> str:
    """
    Normalize any phone input to E.164.

    Numbers of eight digits or fewer without a leading "+" are treated
    as local and get the default country code.
    """
    if not phone:
        return ""
    cleaned = _WHATSAPP_PREFIX.sub("", phone).strip()
    has_plus = cleaned.startswith("+")
    digits = _NON_DIGITS.sub("", cleaned)
    if not digits:
        return ""
    if not has_plus and len(digits) <= LOCAL_NUMBER_MAX_DIGITS:
        digits = (country_code or settings.default_country_code) + digits
    return f"+{digits}"


def to_local(phone: Optional[str], country_code: Optional[str] = None) -> str:
    """E.164 number without the default country code, e.g. "93133496"."""
    e164 = normalize_to_e164(phone, country_code)
    code = country_code or settings.default_country_code
    digits = e164.lstrip("+")
    if digits.startswith(code):
        return digits[len(code):]
    return digits


def to_twilio_format(phone: str) -> str:
    """whatsapp:+504XXXXXXXX"""
    return f"whatsapp:{normalize_to_e164(phone)}"


def to_meta_format(phone: str) -> str:
    """Digits only, no "+"."""
    return normalize_to_e164(phone).lstrip("+")


def mask_phone(phone: Optional[str]) -> str:
    """Mask for logs: keeps the last four digits."""
    if not phone:
        return "***"
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
