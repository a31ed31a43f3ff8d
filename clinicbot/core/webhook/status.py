"""
Delivery status vocabulary.

Provider statuses map onto sent/delivered/read/failed. Updates are
forward-only by rank: sent = failed < delivered < read.
"""

from typing import Optional

from clinicbot.core.messaging.types import status_rank

META_STATUS_MAP = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}

TWILIO_STATUS_MAP = {
    "queued": "sent",
    "accepted": "sent",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "undelivered": "failed",
    "failed": "failed",
}


def map_meta_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    value = status.strip().lower()
    return META_STATUS_MAP.get(value, value)


def map_twilio_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    value = status.strip().lower()
    return TWILIO_STATUS_MAP.get(value, value)


def can_apply_status(current: Optional[str], new: str) -> bool:
    """True unless new would move the row backwards."""
    if current is None:
        return True
    return status_rank(new) >= status_rank(current)
