"""
Provider-agnostic messaging types.

Every outbound message goes through the gateway as a SendRequest and
comes back as a SendResult, whichever provider the line uses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol


class MessageType(str, Enum):
    """Logical message types used for template resolution."""

    CONFIRMATION = "confirmation"
    REMINDER_24H = "reminder_24h"
    RESCHEDULE_DOCTOR = "reschedule_doctor"
    PATIENT_CONFIRMED = "patient_confirmed"
    PATIENT_RESCHEDULE = "patient_reschedule"
    PATIENT_REPLY = "patient_reply"
    GENERIC = "generic"


class ProviderName(str, Enum):
    META = "meta"
    TWILIO = "twilio"


class ErrorCode:
    """Gateway error codes surfaced in SendResult.error_code."""

    MESSAGING_DISABLED = "MESSAGING_DISABLED"
    TEMPLATE_PENDING_APPROVAL = "TEMPLATE_PENDING_APPROVAL"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_ACTIVE_LINE = "NO_ACTIVE_LINE"
    PROVIDER_NOT_CONFIGURED = "PROVIDER_NOT_CONFIGURED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Types whose Meta templates carry quick-reply buttons
QUICK_REPLY_TYPES = frozenset({MessageType.CONFIRMATION.value, MessageType.REMINDER_24H.value})


@dataclass
class SendRequest:
    """What a caller wants delivered."""

    to: str
    type: str = MessageType.GENERIC.value
    template_name: Optional[str] = None
    template_params: Optional[dict[str, str]] = None
    body: Optional[str] = None
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    organization_id: Optional[str] = None
    line_id: Optional[str] = None


@dataclass
class SendResult:
    """Outcome of a gateway send. Never raised, always returned."""

    ok: bool
    status: Optional[str] = None
    provider_message_id: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    twilio_sid: Optional[str] = None

    def to_dict(self) -> dict:
        result: dict = {"ok": self.ok}
        if self.status:
            result["status"] = self.status
        if self.provider_message_id:
            result["providerMessageId"] = self.provider_message_id
        if self.provider:
            result["provider"] = self.provider
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["errorCode"] = self.error_code
        if self.twilio_sid:
            result["twilioSid"] = self.twilio_sid
        return result


@dataclass
class ProviderRequest:
    """Fully resolved message handed to an adapter."""

    to: str
    kind: str  # "template" | "text"
    template_name: Optional[str] = None
    template_language: str = "es"
    template_params: Optional[dict[str, str]] = None
    button_payloads: Optional[list[str]] = None
    body: Optional[str] = None


@dataclass
class ProviderResult:
    ok: bool
    provider: str
    status: str = "failed"
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: dict = field(default_factory=dict)


class MessagingProvider(Protocol):
    """Contract every provider adapter satisfies."""

    name: str

    async def send_message(self, request: ProviderRequest) -> ProviderResult:
        ...


@dataclass
class LineConfig:
    """Snapshot of a WhatsApp line and its stored credentials."""

    id: str
    phone_number: str
    provider: str
    organization_id: Optional[str] = None
    is_active: bool = True
    bot_enabled: bool = False
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_from: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None
    meta_waba_id: Optional[str] = None
    meta_phone_number_id: Optional[str] = None
    meta_access_token: Optional[str] = None


@dataclass
class TemplateMappingInfo:
    template_name: str
    template_language: str = "es"
    meta_status: Optional[str] = None


@dataclass
class MessageLogEntry:
    """One row for the append-only message log."""

    direction: str  # "outbound" | "inbound"
    status: str
    to_phone: Optional[str] = None
    from_phone: Optional[str] = None
    body: Optional[str] = None
    template_name: Optional[str] = None
    type: Optional[str] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    organization_id: Optional[str] = None
    line_id: Optional[str] = None
    raw_payload: Optional[dict] = None


# Delivery status order. A status update never moves a row backwards.
STATUS_RANK: dict[str, int] = {
    "sent": 1,
    "failed": 1,
    "delivered": 2,
    "read": 3,
}


def status_rank(status: Optional[str]) -> int:
    return STATUS_RANK.get(status or "", 0)
