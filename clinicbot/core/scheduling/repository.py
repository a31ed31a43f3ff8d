"""
Scheduling repository.

Narrow data access for schedules, appointments, patients and the
doctors a line serves. Every method opens its own short session.
"""

import logging
import uuid
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from clinicbot.core.exceptions import SlotConflictError
from clinicbot.core.scheduling.types import (
    AppointmentInfo,
    BookedInterval,
    DoctorInfo,
    LineDoctor,
    PatientInfo,
    ScheduleRule,
)
from clinicbot.infra.database import get_db_context
from clinicbot.models.database import (
    ACTIVE_STATUSES,
    CANCELLED_STATUSES,
    Appointment,
    AppointmentStatus,
    Calendar,
    CalendarDoctor,
    CalendarSchedule,
    Doctor,
    DoctorSchedule,
    LineDoctor as LineDoctorRow,
    Organization,
    Patient,
)

logger = logging.getLogger(__name__)


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _str(value) -> Optional[str]:
    return str(value) if value is not None else None


def _appointment_info(row: Appointment, doctor: Optional[Doctor] = None) -> AppointmentInfo:
    return AppointmentInfo(
        id=str(row.id),
        doctor_id=str(row.doctor_id),
        patient_id=str(row.patient_id),
        date=row.date,
        time=row.time,
        duration_minutes=row.duration_minutes,
        status=row.status,
        organization_id=_str(row.organization_id),
        calendar_id=_str(row.calendar_id),
        doctor_name=doctor.name if doctor else None,
        doctor_prefix=doctor.prefix if doctor else None,
        reminder_24h_sent_at=row.reminder_24h_sent_at,
    )


class SchedulingRepository:
    """Data access for the slot engine, booking service and bot."""

    # === Schedules ===

    async def get_schedule_rules(
        self,
        doctor_id: str,
        calendar_id: Optional[str] = None,
    ) -> tuple[list[ScheduleRule], list[str]]:
        """
        Load the weekly windows that apply to a doctor.

        With calendar_id, only that calendar's windows are used. Without
        it, the windows of every active calendar the doctor belongs to
        are used, falling back to the doctor's own schedule.

        Returns:
            (rules, calendar_ids) where calendar_ids are the calendars
            whose windows were used (empty for the doctor fallback)
        """
        async with get_db_context() as db:
            if calendar_id:
                calendar_ids = [_uuid(calendar_id)]
            else:
                result = await db.execute(
                    select(CalendarDoctor.calendar_id)
                    .join(Calendar, Calendar.id == CalendarDoctor.calendar_id)
                    .where(
                        CalendarDoctor.doctor_id == _uuid(doctor_id),
                        CalendarDoctor.is_active.is_(True),
                        Calendar.is_active.is_(True),
                    )
                )
                calendar_ids = list(result.scalars().all())

            if calendar_ids:
                result = await db.execute(
                    select(CalendarSchedule).where(
                        CalendarSchedule.calendar_id.in_(calendar_ids)
                    )
                )
                rows = result.scalars().all()
                if rows:
                    rules = [
                        ScheduleRule(
                            owner_id=str(r.calendar_id),
                            day_of_week=r.day_of_week,
                            start_time=r.start_time,
                            end_time=r.end_time,
                        )
                        for r in rows
                    ]
                    return rules, [str(c) for c in calendar_ids]
                if calendar_id:
                    return [], [str(c) for c in calendar_ids]

            result = await db.execute(
                select(DoctorSchedule).where(DoctorSchedule.doctor_id == _uuid(doctor_id))
            )
            rules = [
                ScheduleRule(
                    owner_id=str(r.doctor_id),
                    day_of_week=r.day_of_week,
                    start_time=r.start_time,
                    end_time=r.end_time,
                )
                for r in result.scalars().all()
            ]
            return rules, []

    async def get_co_assigned_doctor_ids(self, calendar_ids: list[str]) -> list[str]:
        """Doctors actively assigned to any of the given calendars."""
        if not calendar_ids:
            return []
        async with get_db_context() as db:
            result = await db.execute(
                select(CalendarDoctor.doctor_id).where(
                    CalendarDoctor.calendar_id.in_([_uuid(c) for c in calendar_ids]),
                    CalendarDoctor.is_active.is_(True),
                )
            )
            return sorted({str(d) for d in result.scalars().all()})

    async def get_booked_intervals(
        self,
        doctor_ids: list[str],
        start: date,
        end: date,
    ) -> list[BookedInterval]:
        """Non-cancelled appointments of the given doctors in [start, end]."""
        if not doctor_ids:
            return []
        async with get_db_context() as db:
            result = await db.execute(
                select(Appointment).where(
                    Appointment.doctor_id.in_([_uuid(d) for d in doctor_ids]),
                    Appointment.date >= start,
                    Appointment.date <= end,
                    Appointment.status.notin_(CANCELLED_STATUSES),
                )
            )
            return [
                BookedInterval(
                    doctor_id=str(a.doctor_id),
                    date=a.date,
                    time=a.time,
                    duration_minutes=a.duration_minutes,
                )
                for a in result.scalars().all()
            ]

    # === Doctors ===

    async def get_line_doctors(self, line_id: str) -> list[LineDoctor]:
        """Active doctors served by a WhatsApp line, ordered by name."""
        async with get_db_context() as db:
            result = await db.execute(
                select(LineDoctorRow, Doctor)
                .join(Doctor, Doctor.id == LineDoctorRow.doctor_id)
                .where(
                    LineDoctorRow.whatsapp_line_id == _uuid(line_id),
                    Doctor.is_active.is_(True),
                )
                .order_by(Doctor.name)
            )
            return [
                LineDoctor(
                    doctor_id=str(doctor.id),
                    name=doctor.name,
                    prefix=doctor.prefix,
                    calendar_id=_str(link.calendar_id),
                    clinic_id=_str(doctor.clinic_id),
                )
                for link, doctor in result.all()
            ]

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorInfo]:
        async with get_db_context() as db:
            doctor = await db.get(Doctor, _uuid(doctor_id))
            if doctor is None:
                return None
            return DoctorInfo(
                id=str(doctor.id),
                name=doctor.name,
                prefix=doctor.prefix,
                phone=doctor.phone,
                organization_id=_str(doctor.organization_id),
                clinic_id=_str(doctor.clinic_id),
            )

    # === Patients ===

    async def find_patient_by_phone(
        self,
        e164: str,
        local: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Optional[PatientInfo]:
        """Find a patient stored with either the E.164 or the local number."""
        candidates = [e164] + ([local] if local and local != e164 else [])
        async with get_db_context() as db:
            query = select(Patient).where(Patient.phone.in_(candidates))
            if organization_id:
                query = query.where(Patient.organization_id == _uuid(organization_id))
            result = await db.execute(query.order_by(Patient.created_at).limit(1))
            patient = result.scalar_one_or_none()
            if patient is None:
                return None
            return PatientInfo(
                id=str(patient.id),
                name=patient.name,
                phone=patient.phone,
                organization_id=_str(patient.organization_id),
            )

    async def get_patient(self, patient_id: str) -> Optional[PatientInfo]:
        async with get_db_context() as db:
            patient = await db.get(Patient, _uuid(patient_id))
            if patient is None:
                return None
            return PatientInfo(
                id=str(patient.id),
                name=patient.name,
                phone=patient.phone,
                organization_id=_str(patient.organization_id),
            )

    async def create_patient(
        self,
        name: str,
        phone: str,
        organization_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
    ) -> PatientInfo:
        async with get_db_context() as db:
            patient = Patient(
                name=name,
                phone=phone,
                organization_id=_uuid(organization_id),
                doctor_id=_uuid(doctor_id),
            )
            db.add(patient)
            await db.flush()
            logger.info(f"Patient created: {patient.id}")
            return PatientInfo(
                id=str(patient.id),
                name=name,
                phone=phone,
                organization_id=organization_id,
            )

    # === Appointments ===

    async def create_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        appointment_date: date,
        appointment_time: time,
        duration_minutes: int,
        organization_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        appointment_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        rescheduled_from_id: Optional[str] = None,
    ) -> str:
        """
        Insert an appointment with status 'agendada'.

        Raises:
            SlotConflictError: If the unique slot index rejects the row
        """
        try:
            async with get_db_context() as db:
                appointment = Appointment(
                    doctor_id=_uuid(doctor_id),
                    patient_id=_uuid(patient_id),
                    organization_id=_uuid(organization_id),
                    calendar_id=_uuid(calendar_id),
                    date=appointment_date,
                    time=appointment_time,
                    duration_minutes=duration_minutes,
                    status=AppointmentStatus.AGENDADA.value,
                    appointment_at=appointment_at,
                    notes=notes,
                    rescheduled_from_id=_uuid(rescheduled_from_id),
                )
                db.add(appointment)
                await db.flush()
                return str(appointment.id)
        except IntegrityError as e:
            logger.warning(
                f"Slot conflict for doctor {doctor_id} on {appointment_date} {appointment_time}: {e.orig}"
            )
            raise SlotConflictError("El horario ya fue reservado") from e

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentInfo]:
        """Appointment by id, ignoring cancelled rows."""
        async with get_db_context() as db:
            result = await db.execute(
                select(Appointment, Doctor)
                .join(Doctor, Doctor.id == Appointment.doctor_id)
                .where(
                    Appointment.id == _uuid(appointment_id),
                    Appointment.status != AppointmentStatus.CANCELADA.value,
                )
            )
            row = result.first()
            if row is None:
                return None
            return _appointment_info(row[0], row[1])

    async def update_appointment_status(
        self,
        appointment_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> bool:
        values: dict = {"status": status}
        if notes is not None:
            values["notes"] = notes
        async with get_db_context() as db:
            result = await db.execute(
                update(Appointment)
                .where(Appointment.id == _uuid(appointment_id))
                .values(**values)
            )
            return result.rowcount > 0

    async def cancel_appointment(self, appointment_id: str, notes: Optional[str] = None) -> bool:
        return await self.update_appointment_status(
            appointment_id, AppointmentStatus.CANCELADA.value, notes
        )

    async def get_upcoming_appointments(
        self,
        patient_id: str,
        today: date,
        organization_id: Optional[str] = None,
        limit: int = 5,
    ) -> list[AppointmentInfo]:
        """Upcoming 'agendada'/'confirmada' appointments, soonest first."""
        async with get_db_context() as db:
            query = (
                select(Appointment, Doctor)
                .join(Doctor, Doctor.id == Appointment.doctor_id)
                .where(
                    Appointment.patient_id == _uuid(patient_id),
                    Appointment.date >= today,
                    Appointment.status.in_((
                        AppointmentStatus.AGENDADA.value,
                        AppointmentStatus.CONFIRMADA.value,
                    )),
                )
                .order_by(Appointment.date, Appointment.time)
                .limit(limit)
            )
            if organization_id:
                query = query.where(Appointment.organization_id == _uuid(organization_id))
            result = await db.execute(query)
            return [_appointment_info(a, d) for a, d in result.all()]

    async def find_recent_active_appointments(
        self,
        patient_id: str,
        since: date,
        limit: int = 2,
    ) -> list[AppointmentInfo]:
        """Active appointments on or after since, soonest first."""
        async with get_db_context() as db:
            result = await db.execute(
                select(Appointment, Doctor)
                .join(Doctor, Doctor.id == Appointment.doctor_id)
                .where(
                    Appointment.patient_id == _uuid(patient_id),
                    Appointment.date >= since,
                    Appointment.status.in_(ACTIVE_STATUSES),
                )
                .order_by(Appointment.date, Appointment.time)
                .limit(limit)
            )
            return [_appointment_info(a, d) for a, d in result.all()]

    # === Reminders ===

    async def get_reminder_candidates(self, target: date) -> list[AppointmentInfo]:
        """
        Active appointments on target date still lacking a 24h reminder.

        Appointments of organizations with messaging disabled are skipped.
        """
        async with get_db_context() as db:
            result = await db.execute(
                select(Appointment, Doctor)
                .join(Doctor, Doctor.id == Appointment.doctor_id)
                .outerjoin(Organization, Organization.id == Appointment.organization_id)
                .where(
                    Appointment.date == target,
                    Appointment.status.in_(ACTIVE_STATUSES),
                    Appointment.reminder_24h_sent_at.is_(None),
                    or_(
                        Appointment.organization_id.is_(None),
                        and_(
                            Organization.id.is_not(None),
                            Organization.messaging_enabled.is_(True),
                        ),
                    ),
                )
                .order_by(Appointment.time)
            )
            return [_appointment_info(a, d) for a, d in result.all()]

    async def mark_reminder_sent(self, appointment_id: str, sent_at: datetime) -> None:
        async with get_db_context() as db:
            await db.execute(
                update(Appointment)
                .where(Appointment.id == _uuid(appointment_id))
                .values(reminder_24h_sent_at=sent_at)
            )


# Singleton
_repository: Optional[SchedulingRepository] = None


def get_scheduling_repository() -> SchedulingRepository:
    """Get singleton SchedulingRepository."""
    global _repository
    if _repository is None:
        _repository = SchedulingRepository()
    return _repository
