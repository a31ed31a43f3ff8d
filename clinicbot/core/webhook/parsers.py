"""
Inbound payload parsing.

Meta JSON deliveries and Twilio form posts are normalized into the same
InboundMessage and StatusEvent shapes so one pipeline handles both.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from clinicbot.core.messaging.phone import normalize_to_e164
from clinicbot.core.webhook.status import map_meta_status, map_twilio_status

WHATSAPP_BUSINESS_OBJECT = "whatsapp_business_account"

_UUID_EXACT = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_UUID_ANYWHERE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)


@dataclass
class InboundMessage:
    provider: str
    provider_message_id: Optional[str]
    from_phone: str
    to_phone: str
    text: str
    appointment_id: Optional[str] = None
    contact_name: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class StatusEvent:
    provider: str
    provider_message_id: str
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class MetaChange:
    """One entry.changes[].value block."""

    phone_number_id: Optional[str]
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[StatusEvent] = field(default_factory=list)


# === Meta ===

def extract_meta_text(message: dict) -> str:
    """Visible text of any Meta message type."""
    kind = message.get("type")
    if kind == "text":
        return (message.get("text") or {}).get("body", "")
    if kind == "button":
        button = message.get("button") or {}
        return button.get("text") or button.get("payload") or ""
    if kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply")
        if reply:
            return reply.get("title") or reply.get("id") or ""
    return ""


def extract_meta_appointment_id(message: dict) -> Optional[str]:
    """Appointment id carried in a quick-reply payload, when UUID-shaped."""
    kind = message.get("type")
    payload = None
    if kind == "button":
        payload = (message.get("button") or {}).get("payload")
    elif kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        payload = reply.get("id")
    if payload and _UUID_EXACT.match(payload.strip()):
        return payload.strip()
    return None


def parse_meta_payload(payload: Mapping[str, Any]) -> list[MetaChange]:
    """Flatten entry[].changes[] into MetaChange blocks.

    Payloads for objects other than whatsapp_business_account yield [].
    """
    if payload.get("object") != WHATSAPP_BUSINESS_OBJECT:
        return []

    changes: list[MetaChange] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            display_phone = normalize_to_e164(metadata.get("display_phone_number"))
            contacts = value.get("contacts") or []
            contact_name = ((contacts[0] if contacts else {}).get("profile") or {}).get("name")

            block = MetaChange(phone_number_id=metadata.get("phone_number_id"))

            for message in value.get("messages") or []:
                block.messages.append(InboundMessage(
                    provider="meta",
                    provider_message_id=message.get("id"),
                    from_phone=normalize_to_e164(message.get("from")),
                    to_phone=display_phone,
                    text=extract_meta_text(message),
                    appointment_id=extract_meta_appointment_id(message),
                    contact_name=contact_name,
                    raw=message,
                ))

            for status in value.get("statuses") or []:
                mapped = map_meta_status(status.get("status"))
                if not status.get("id") or not mapped:
                    continue
                errors = status.get("errors") or []
                first_error = errors[0] if errors else {}
                block.statuses.append(StatusEvent(
                    provider="meta",
                    provider_message_id=status["id"],
                    status=mapped,
                    error_code=(
                        str(first_error["code"])
                        if mapped == "failed" and first_error.get("code") is not None
                        else None
                    ),
                    error_message=first_error.get("title") if mapped == "failed" else None,
                ))

            changes.append(block)
    return changes


# === Twilio ===

def parse_twilio_inbound(form: Mapping[str, str]) -> InboundMessage:
    """Normalize a Twilio inbound form post."""
    body = form.get("Body") or ""
    button_text = form.get("ButtonText") or ""
    button_payload = (form.get("ButtonPayload") or "").strip()

    match = _UUID_ANYWHERE.search(button_payload) if button_payload else None

    return InboundMessage(
        provider="twilio",
        provider_message_id=form.get("MessageSid") or form.get("SmsMessageSid"),
        from_phone=normalize_to_e164(form.get("From")),
        to_phone=normalize_to_e164(form.get("To")),
        text=button_text or body or button_payload,
        appointment_id=match.group(0) if match else None,
        contact_name=form.get("ProfileName"),
        raw=dict(form),
    )


def parse_twilio_status(form: Mapping[str, str]) -> Optional[StatusEvent]:
    """Normalize a Twilio status callback. None when sid or status is missing."""
    sid = form.get("MessageSid") or form.get("SmsSid")
    status = map_twilio_status(form.get("MessageStatus") or form.get("SmsStatus"))
    if not sid or not status:
        return None
    failed = status == "failed"
    return StatusEvent(
        provider="twilio",
        provider_message_id=sid,
        status=status,
        error_code=(form.get("ErrorCode") or None) if failed else None,
        error_message=(form.get("ErrorMessage") or None) if failed else None,
    )
