"""Reply intent detection for the reminder/confirmation flow."""

import re
from enum import Enum


class ReplyIntent(str, Enum):
    CONFIRM = "confirm"
    RESCHEDULE = "reschedule"
    UNKNOWN = "unknown"


CONFIRM_PATTERNS = ("confirm", "confirmar")
RESCHEDULE_PATTERNS = ("reagend", "reagendar", "cambiar", "resched")

# "si" only as a whole word so "sin" or "asistir" do not confirm
_YES_WORD = re.compile(r"(?<!\w)s[ií](?!\w)")


def detect_intent(text: str) -> ReplyIntent:
    if not text:
        return ReplyIntent.UNKNOWN
    lower = text.strip().lower()

    if any(p in lower for p in CONFIRM_PATTERNS):
        return ReplyIntent.CONFIRM
    if any(p in lower for p in RESCHEDULE_PATTERNS):
        return ReplyIntent.RESCHEDULE
    if _YES_WORD.search(lower):
        return ReplyIntent.CONFIRM
    return ReplyIntent.UNKNOWN
