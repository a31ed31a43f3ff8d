"""
Conversation Module

Menu-driven WhatsApp bot: session storage, FAQ matching and the
state machine that drives booking, rescheduling and handoff.

Usage:
    from clinicbot.core.conversation import get_state_machine

    response = await get_state_machine().handle_message(
        line_id=line_id,
        patient_phone="+50499999999",
        message_text="1",
        organization_id=org_id,
    )
    print(response.render())
"""

from clinicbot.core.conversation.state import (
    BotResponse,
    BotState,
    CancelPhase,
    resolve_option,
)

from clinicbot.core.conversation.context import (
    BookingContext,
    ConversationContext,
    FAQContext,
    MenuContext,
    RescheduleContext,
)

from clinicbot.core.conversation.session import (
    ConversationSession,
    RESTART_COMMANDS,
    SessionStore,
    get_session_store,
    is_restart_command,
)

from clinicbot.core.conversation.faq import (
    FAQEntry,
    match_faq,
    score_entry,
)

from clinicbot.core.conversation.machine import (
    ConversationStateMachine,
    get_state_machine,
)

__all__ = [
    # State
    "BotResponse",
    "BotState",
    "CancelPhase",
    "resolve_option",
    # Context
    "BookingContext",
    "ConversationContext",
    "FAQContext",
    "MenuContext",
    "RescheduleContext",
    # Session
    "ConversationSession",
    "RESTART_COMMANDS",
    "SessionStore",
    "get_session_store",
    "is_restart_command",
    # FAQ
    "FAQEntry",
    "match_faq",
    "score_entry",
    # State machine
    "ConversationStateMachine",
    "get_state_machine",
]
