"""Conversation states and the per-turn response contract."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class BotState(str, Enum):
    """Where the conversation is. Selection states await the named choice."""

    GREETING = "greeting"
    MAIN_MENU = "main_menu"
    FAQ_SEARCH = "faq_search"

    # Booking
    BOOKING_SELECT_DOCTOR = "booking_select_doctor"
    BOOKING_SELECT_WEEK = "booking_select_week"
    BOOKING_SELECT_DAY = "booking_select_day"
    BOOKING_SELECT_HOUR = "booking_select_hour"
    BOOKING_CONFIRM = "booking_confirm"
    BOOKING_ASK_NAME = "booking_ask_name"

    # Reschedule / cancel
    RESCHEDULE_LIST = "reschedule_list"
    CANCEL_CONFIRM = "cancel_confirm"

    # Terminal
    HANDOFF_SECRETARY = "handoff_secretary"
    COMPLETED = "completed"


class CancelPhase(str, Enum):
    """Sub-phase of CANCEL_CONFIRM."""

    CHOOSE_ACTION = "choose_action"
    CONFIRM_CANCEL = "confirm_cancel"


@dataclass
class BotResponse:
    """What the bot says this turn and where the conversation goes next."""

    message: str
    next_state: BotState
    options: list[str] = field(default_factory=list)
    requires_input: bool = True
    session_complete: bool = False

    def render(self) -> str:
        """Text sent over WhatsApp: message, blank line, numbered options."""
        if not self.options:
            return self.message
        lines = [f"{i}. {opt}" for i, opt in enumerate(self.options, start=1)]
        return f"{self.message}\n\n" + "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "options": list(self.options),
            "requiresInput": self.requires_input,
            "nextState": self.next_state.value,
            "sessionComplete": self.session_complete,
        }


def resolve_option(text: str, options: list[str]) -> Optional[int]:
    """
    Map a reply to a zero-based option index.

    Accepts the option number or the option label (case-insensitive).
    """
    cleaned = text.strip().rstrip(".").strip()
    if cleaned.isdigit():
        index = int(cleaned) - 1
        return index if 0 <= index < len(options) else None
    lowered = cleaned.lower()
    for i, option in enumerate(options):
        if option.lower() == lowered:
            return i
    return None
