"""
Scheduling value types.

Plain dataclasses returned by the scheduling repository so the slot
engine and the bot never hold ORM instances across sessions.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional


@dataclass(frozen=True)
class ScheduleRule:
    """Weekly working window. owner_id is a doctor or a calendar."""

    owner_id: str
    day_of_week: int  # 0=Sunday .. 6=Saturday
    start_time: time
    end_time: time


@dataclass(frozen=True)
class BookedInterval:
    """Occupied block on a given date."""

    doctor_id: str
    date: date
    time: time
    duration_minutes: int


@dataclass
class DoctorInfo:
    id: str
    name: str
    prefix: Optional[str] = None
    phone: Optional[str] = None
    organization_id: Optional[str] = None
    clinic_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.prefix or 'Dr.'} {self.name}"


@dataclass
class LineDoctor:
    """Doctor served by a WhatsApp line, with the calendar it books on."""

    doctor_id: str
    name: str
    prefix: Optional[str] = None
    calendar_id: Optional[str] = None
    clinic_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.prefix or 'Dr.'} {self.name}"

    def to_dict(self) -> dict:
        return {
            "doctor_id": self.doctor_id,
            "name": self.name,
            "prefix": self.prefix,
            "calendar_id": self.calendar_id,
            "clinic_id": self.clinic_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineDoctor":
        return cls(
            doctor_id=data["doctor_id"],
            name=data.get("name", ""),
            prefix=data.get("prefix"),
            calendar_id=data.get("calendar_id"),
            clinic_id=data.get("clinic_id"),
        )


@dataclass
class PatientInfo:
    id: str
    name: str
    phone: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass
class AppointmentInfo:
    """Appointment snapshot used by the bot, the webhook and reminders."""

    id: str
    doctor_id: str
    patient_id: str
    date: date
    time: time
    duration_minutes: int
    status: str
    organization_id: Optional[str] = None
    calendar_id: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_prefix: Optional[str] = None
    reminder_24h_sent_at: Optional[datetime] = None
    extra: dict = field(default_factory=dict)

    @property
    def reminder_24h_sent(self) -> bool:
        return self.reminder_24h_sent_at is not None

    @property
    def doctor_display_name(self) -> str:
        return f"{self.doctor_prefix or 'Dr.'} {self.doctor_name or ''}".strip()
