"""
Database Models

SQLAlchemy ORM models for the multi-tenant WhatsApp scheduling platform.
Table names follow the existing production schema.
"""

import uuid
from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AppointmentStatus(str, Enum):
    """Appointment status values.

    Spanish values are written by this service; the English ones come
    from older integrations and are still honoured when reading.
    """
    AGENDADA = "agendada"
    CONFIRMADA = "confirmada"
    REAGENDAR = "reagendar"
    CANCELADA = "cancelada"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CANCELED = "canceled"


ACTIVE_STATUSES = (
    AppointmentStatus.AGENDADA.value,
    AppointmentStatus.PENDING.value,
    AppointmentStatus.CONFIRMADA.value,
    AppointmentStatus.CONFIRMED.value,
)

CANCELLED_STATUSES = (
    AppointmentStatus.CANCELLED.value,
    AppointmentStatus.CANCELED.value,
    AppointmentStatus.CANCELADA.value,
)

_ACTIVE_SLOT_PREDICATE = "status NOT IN (" + ", ".join(f"'{s}'" for s in CANCELLED_STATUSES) + ")"


class ChannelProvider(str, Enum):
    """Third-party transport backing a WhatsApp line."""
    META = "meta"
    TWILIO = "twilio"


class Organization(Base, TimestampMixin):
    """
    Organization model (Tenant).

    messaging_enabled is the per-tenant kill switch for outbound messages.
    """

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    messaging_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name='{self.name}')>"


class Clinic(Base, TimestampMixin):
    """Clinic within an organization. Used as an FAQ scope."""

    __tablename__ = "clinics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Doctor(Base, TimestampMixin):
    """Doctor that patients book appointments with."""

    __tablename__ = "doctors"
    __table_args__ = (
        Index("idx_doctor_org", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True
    )
    clinic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("clinics.id", ondelete="SET NULL"),
        nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    prefix: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    @property
    def display_name(self) -> str:
        """Name with honorific, defaulting to 'Dr.'."""
        return f"{self.prefix or 'Dr.'} {self.name}"

    def __repr__(self) -> str:
        return f"<Doctor(id={self.id}, name='{self.display_name}')>"


class Calendar(Base, TimestampMixin):
    """Shared booking calendar. Doctors on one calendar share its clock."""

    __tablename__ = "calendars"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CalendarDoctor(Base):
    """Assignment of a doctor to a calendar."""

    __tablename__ = "calendar_doctors"
    __table_args__ = (
        Index("idx_calendar_doctor", "calendar_id", "doctor_id", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="CASCADE"),
        nullable=False
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DoctorSchedule(Base):
    """Weekly working window owned by a doctor (day_of_week: 0=Sunday)."""

    __tablename__ = "doctor_schedules"
    __table_args__ = (
        Index("idx_doctor_schedule_dow", "doctor_id", "day_of_week"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class CalendarSchedule(Base):
    """Weekly working window owned by a shared calendar (day_of_week: 0=Sunday)."""

    __tablename__ = "calendar_schedules"
    __table_args__ = (
        Index("idx_calendar_schedule_dow", "calendar_id", "day_of_week"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="CASCADE"),
        nullable=False
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class ChannelLine(Base, TimestampMixin):
    """
    WhatsApp line (Channel).

    The provider column decides which adapter and which template
    resolution path the messaging gateway uses. Credential columns are
    optional; missing Twilio values fall back to environment defaults.
    """

    __tablename__ = "whatsapp_lines"
    __table_args__ = (
        Index("idx_line_org_active", "organization_id", "is_active"),
        Index("idx_line_meta_phone_id", "meta_phone_number_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True
    )
    label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(20),
        default=ChannelProvider.TWILIO.value,
        nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    bot_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    bot_greeting: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    twilio_account_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    twilio_auth_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    twilio_phone_from: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    twilio_messaging_service_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta_waba_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta_phone_number_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ChannelLine(id={self.id}, phone='{self.phone_number}', provider='{self.provider}')>"


class LineDoctor(Base):
    """Doctor (and optional calendar) served by a WhatsApp line."""

    __tablename__ = "whatsapp_line_doctors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    whatsapp_line_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("whatsapp_lines.id", ondelete="CASCADE"),
        nullable=False
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    calendar_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="SET NULL"),
        nullable=True
    )


class Patient(Base, TimestampMixin):
    """
    Patient model.

    Phones may be stored as E.164 (+50499999999) or as the local
    8-digit number; lookups try both.
    """

    __tablename__ = "patients"
    __table_args__ = (
        Index("idx_patient_phone", "phone"),
        Index("idx_patient_org", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True
    )
    doctor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="SET NULL"),
        nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name='{self.name}')>"


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    The partial unique indexes on (doctor_id, date, time) and, for shared
    calendars, (calendar_id, date, time) are the last line of defense
    against double booking when two confirmations race.
    reminder_24h_sent_at is the only record of the 24h reminder.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_doctor_date", "doctor_id", "date"),
        Index("idx_appointment_patient", "patient_id"),
        Index(
            "uq_appointment_doctor_slot",
            "doctor_id", "date", "time",
            unique=True,
            postgresql_where=text(_ACTIVE_SLOT_PREDICATE),
        ),
        # Co-assigned doctors share one bookable calendar
        Index(
            "uq_appointment_calendar_slot",
            "calendar_id", "date", "time",
            unique=True,
            postgresql_where=text(f"calendar_id IS NOT NULL AND {_ACTIVE_SLOT_PREDICATE}"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False
    )
    calendar_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendars.id", ondelete="SET NULL"),
        nullable=True
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default=AppointmentStatus.AGENDADA.value,
        nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    appointment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    reminder_24h_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    rescheduled_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True
    )

    @property
    def reminder_24h_sent(self) -> bool:
        """Derived from reminder_24h_sent_at."""
        return self.reminder_24h_sent_at is not None

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, doctor_id={self.doctor_id}, "
            f"date={self.date}, time={self.time}, status='{self.status}')>"
        )


class BotFAQ(Base, TimestampMixin):
    """FAQ entry scoped to a doctor, a clinic or a whole organization."""

    __tablename__ = "bot_faqs"
    __table_args__ = (
        Index("idx_faq_org", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True
    )
    clinic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=True
    )
    doctor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=True
    )
    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[list] = mapped_column(JSON, default=list)
    scope_priority: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)


class MessageLog(Base, TimestampMixin):
    """
    Message log.

    One row per inbound or outbound WhatsApp message. Rows are never
    deleted; only status and error columns change after insert.
    """

    __tablename__ = "message_logs"
    __table_args__ = (
        Index(
            "uq_message_provider_id",
            "provider_message_id",
            unique=True,
            postgresql_where=text("provider_message_id IS NOT NULL"),
        ),
        Index("idx_message_appointment", "appointment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    to_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    from_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    template_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    patient_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    doctor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    whatsapp_line_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class TemplateMapping(Base, TimestampMixin):
    """Maps a logical message type to a provider template for one line."""

    __tablename__ = "template_mappings"
    __table_args__ = (
        Index("idx_template_lookup", "whatsapp_line_id", "logical_type", "provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    whatsapp_line_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("whatsapp_lines.id", ondelete="CASCADE"),
        nullable=False
    )
    logical_type: Mapped[str] = mapped_column(String(50), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    template_name: Mapped[str] = mapped_column(String(255), nullable=False)
    template_language: Mapped[str] = mapped_column(String(10), default="es")
    meta_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class OrgMember(Base, TimestampMixin):
    """Staff member of an organization (staff directory for handoff)."""

    __tablename__ = "org_members"
    __table_args__ = (
        Index("idx_org_member_role", "organization_id", "role"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
