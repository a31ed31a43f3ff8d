"""
Conversation context.

Each flow keeps its own typed context. The active one is stored with a
"kind" tag so a session read back from Redis yields the same type.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional, Union

from clinicbot.core.conversation.state import CancelPhase


@dataclass
class MenuContext:
    kind: str = "menu"


@dataclass
class BookingContext:
    """Selections made so far in the booking (or reschedule) flow."""

    kind: str = "booking"
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    calendar_id: Optional[str] = None
    clinic_id: Optional[str] = None
    duration: int = 60
    available_doctors: list[dict] = field(default_factory=list)
    weeks: list[str] = field(default_factory=list)  # ISO Mondays
    week_start: Optional[str] = None
    days: list[str] = field(default_factory=list)  # ISO dates
    date: Optional[str] = None
    hours: list[str] = field(default_factory=list)  # "HH:MM"
    hour_page: int = 0
    time: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    is_reschedule: bool = False
    original_appointment_id: Optional[str] = None


@dataclass
class RescheduleContext:
    """Appointments offered for reschedule/cancel and the current pick."""

    kind: str = "reschedule"
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    appointments: list[dict] = field(default_factory=list)
    selected_appointment_id: Optional[str] = None
    cancel_phase: CancelPhase = CancelPhase.CHOOSE_ACTION

    def selected(self) -> Optional[dict]:
        for appointment in self.appointments:
            if appointment["id"] == self.selected_appointment_id:
                return appointment
        return None


@dataclass
class FAQContext:
    kind: str = "faq"
    doctor_id: Optional[str] = None
    clinic_id: Optional[str] = None
    pending_followup: Optional[str] = None  # "answered" | "not_found"


FlowContext = Union[MenuContext, BookingContext, RescheduleContext, FAQContext]

_KINDS: dict[str, type] = {
    "menu": MenuContext,
    "booking": BookingContext,
    "reschedule": RescheduleContext,
    "faq": FAQContext,
}


@dataclass
class ConversationContext:
    """Context persisted with the session."""

    flow: FlowContext = field(default_factory=MenuContext)
    invalid_attempts: int = 0
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        flow = asdict(self.flow)
        if isinstance(self.flow, RescheduleContext):
            flow["cancel_phase"] = self.flow.cancel_phase.value
        return {
            "flow": flow,
            "invalid_attempts": self.invalid_attempts,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ConversationContext":
        """Rebuild from storage. Unknown kinds degrade to the menu context."""
        if not data:
            return cls()
        raw = dict(data.get("flow") or {})
        flow_cls = _KINDS.get(raw.get("kind", "menu"), MenuContext)
        known = flow_cls.__dataclass_fields__
        flow = flow_cls(**{k: v for k, v in raw.items() if k in known})
        if isinstance(flow, RescheduleContext):
            flow.cancel_phase = CancelPhase(flow.cancel_phase)
        return cls(
            flow=flow,
            invalid_attempts=int(data.get("invalid_attempts", 0)),
            metadata=dict(data.get("metadata") or {}),
        )
