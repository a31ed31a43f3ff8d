"""
Webhook Module

Signature checks, payload parsing and processing for Meta Cloud API
and Twilio webhook deliveries.
"""

from clinicbot.core.webhook.signatures import (
    compute_meta_signature,
    verify_meta_signature,
    verify_token,
    verify_twilio_signature,
)

from clinicbot.core.webhook.status import (
    can_apply_status,
    map_meta_status,
    map_twilio_status,
)

from clinicbot.core.webhook.intents import (
    ReplyIntent,
    detect_intent,
)

from clinicbot.core.webhook.parsers import (
    InboundMessage,
    MetaChange,
    StatusEvent,
    parse_meta_payload,
    parse_twilio_inbound,
    parse_twilio_status,
)

from clinicbot.core.webhook.processor import (
    MessageOutcome,
    WebhookProcessor,
    WebhookSummary,
    get_webhook_processor,
)

__all__ = [
    # Signatures
    "compute_meta_signature",
    "verify_meta_signature",
    "verify_token",
    "verify_twilio_signature",
    # Status
    "can_apply_status",
    "map_meta_status",
    "map_twilio_status",
    # Intents
    "ReplyIntent",
    "detect_intent",
    # Parsers
    "InboundMessage",
    "MetaChange",
    "StatusEvent",
    "parse_meta_payload",
    "parse_twilio_inbound",
    "parse_twilio_status",
    # Processor
    "MessageOutcome",
    "WebhookProcessor",
    "WebhookSummary",
    "get_webhook_processor",
]
