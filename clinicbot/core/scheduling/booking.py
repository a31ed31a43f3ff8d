"""
Booking Service.

Writes appointments after re-validating the slot. The partial unique
indexes on (doctor_id, date, time) and (calendar_id, date, time) back
the re-check when two confirmations race for the same slot.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from clinicbot.core.exceptions import SlotConflictError, ValidationError
from clinicbot.core.scheduling.repository import (
    SchedulingRepository,
    get_scheduling_repository,
)
from clinicbot.core.scheduling.slots import SlotEngine, get_slot_engine
from clinicbot.core.scheduling.timeutils import (
    combine_local,
    format_date,
    format_time_12h,
    parse_hhmm,
)

logger = logging.getLogger(__name__)

SLOT_TAKEN_MESSAGE = "El horario seleccionado ya está ocupado"
RESCHEDULE_FAILED = "RESCHEDULE_FAILED"

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480


@dataclass
class BookingResult:
    """Result of a booking, reschedule or cancel attempt."""

    success: bool
    booking_id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "booking_id": self.booking_id,
            "message": self.message,
            "error_code": self.error_code,
        }


class BookingService:
    """Creates, reschedules and cancels appointments."""

    def __init__(
        self,
        engine: Optional[SlotEngine] = None,
        repository: Optional[SchedulingRepository] = None,
    ):
        self._engine = engine
        self._repository = repository

    def _get_engine(self) -> SlotEngine:
        if self._engine is None:
            self._engine = get_slot_engine()
        return self._engine

    def _get_repository(self) -> SchedulingRepository:
        if self._repository is None:
            self._repository = get_scheduling_repository()
        return self._repository

    async def book(
        self,
        doctor_id: str,
        patient_id: str,
        day: date,
        time_str: str,
        duration_minutes: int,
        organization_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
        notes: Optional[str] = None,
        rescheduled_from_id: Optional[str] = None,
    ) -> BookingResult:
        """
        Book a slot after checking it is still free.

        Args:
            doctor_id: Doctor to book with
            patient_id: Patient the appointment belongs to
            day: Appointment date
            time_str: Start time as "HH:MM"
            duration_minutes: Length, 15 to 480 minutes
            organization_id: Tenant, if known
            calendar_id: Shared calendar the slot was picked from
            notes: Free-text notes
            rescheduled_from_id: Original appointment when rescheduling

        Returns:
            BookingResult; error_code is "SLOT_TAKEN" on conflict

        Raises:
            ValidationError: If the duration or time is out of range
        """
        if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
            raise ValidationError(
                f"durationMinutes must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}"
            )
        try:
            start_time = parse_hhmm(time_str)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        engine = self._get_engine()
        if not await engine.is_slot_free(doctor_id, day, time_str, duration_minutes, calendar_id):
            logger.info(f"Slot no longer free: doctor={doctor_id} {day} {time_str}")
            return BookingResult(
                success=False,
                message=SLOT_TAKEN_MESSAGE,
                error_code=SlotConflictError.code,
            )

        try:
            booking_id = await self._get_repository().create_appointment(
                doctor_id=doctor_id,
                patient_id=patient_id,
                appointment_date=day,
                appointment_time=start_time,
                duration_minutes=duration_minutes,
                organization_id=organization_id,
                calendar_id=calendar_id,
                appointment_at=combine_local(day, start_time),
                notes=notes,
                rescheduled_from_id=rescheduled_from_id,
            )
        except SlotConflictError as e:
            return BookingResult(success=False, message=SLOT_TAKEN_MESSAGE, error_code=e.code)

        logger.info(f"Appointment booked: {booking_id} doctor={doctor_id} {day} {time_str}")
        return BookingResult(success=True, booking_id=booking_id, message="Cita agendada")

    async def reschedule(
        self,
        original_appointment_id: str,
        doctor_id: str,
        patient_id: str,
        day: date,
        time_str: str,
        duration_minutes: int,
        organization_id: Optional[str] = None,
        calendar_id: Optional[str] = None,
    ) -> BookingResult:
        """
        Move an appointment: book the new slot first, then cancel the original.

        The original keeps its row with status 'cancelada' and a note
        pointing at the new date.
        """
        result = await self.book(
            doctor_id=doctor_id,
            patient_id=patient_id,
            day=day,
            time_str=time_str,
            duration_minutes=duration_minutes,
            organization_id=organization_id,
            calendar_id=calendar_id,
            rescheduled_from_id=original_appointment_id,
        )
        if not result.success:
            return result

        repository = self._get_repository()
        note = f"Reagendada a {format_date(day)} {format_time_12h(time_str)}"
        try:
            cancelled = await repository.cancel_appointment(original_appointment_id, note)
        except Exception as e:
            logger.error(f"Cancelling {original_appointment_id} during reschedule failed: {e}", exc_info=True)
            cancelled = False

        if not cancelled:
            # Only one active appointment may remain: undo the new booking
            logger.warning(
                f"Reschedule of {original_appointment_id} rolled back, new booking {result.booking_id} cancelled"
            )
            await repository.cancel_appointment(
                result.booking_id, f"Reagendamiento fallido de {original_appointment_id}"
            )
            return BookingResult(
                success=False,
                message="No se pudo reagendar la cita",
                error_code=RESCHEDULE_FAILED,
            )

        logger.info(f"Appointment {original_appointment_id} rescheduled to {result.booking_id}")
        return BookingResult(
            success=True,
            booking_id=result.booking_id,
            message="Cita reagendada",
        )

    async def cancel(self, appointment_id: str, notes: Optional[str] = None) -> BookingResult:
        cancelled = await self._get_repository().cancel_appointment(appointment_id, notes)
        if not cancelled:
            return BookingResult(
                success=False,
                booking_id=appointment_id,
                message="Cita no encontrada",
                error_code="NOT_FOUND",
            )
        logger.info(f"Appointment cancelled: {appointment_id}")
        return BookingResult(success=True, booking_id=appointment_id, message="Cita cancelada")


# Singleton
_service: Optional[BookingService] = None


def get_booking_service() -> BookingService:
    """Get singleton BookingService."""
    global _service
    if _service is None:
        _service = BookingService()
    return _service
