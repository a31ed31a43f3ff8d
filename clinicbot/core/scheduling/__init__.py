"""
Scheduling Module

Slot availability, booking and the scheduling repository.

Usage:
    from clinicbot.core.scheduling import get_slot_engine, get_booking_service

    slots = await get_slot_engine().available_slots(doctor_id, day, 60)
    result = await get_booking_service().book(doctor_id, patient_id, day, slots[0], 60)
"""

from clinicbot.core.scheduling.types import (
    AppointmentInfo,
    BookedInterval,
    DoctorInfo,
    LineDoctor,
    PatientInfo,
    ScheduleRule,
)

from clinicbot.core.scheduling.repository import (
    SchedulingRepository,
    get_scheduling_repository,
)

from clinicbot.core.scheduling.slots import (
    DayAvailability,
    SlotEngine,
    calculate_gaps,
    compute_slots,
    filter_future_slots,
    get_slot_engine,
    merge_intervals,
)

from clinicbot.core.scheduling.booking import (
    BookingResult,
    BookingService,
    get_booking_service,
)

__all__ = [
    # Types
    "AppointmentInfo",
    "BookedInterval",
    "DoctorInfo",
    "LineDoctor",
    "PatientInfo",
    "ScheduleRule",
    # Repository
    "SchedulingRepository",
    "get_scheduling_repository",
    # Slots
    "DayAvailability",
    "SlotEngine",
    "calculate_gaps",
    "compute_slots",
    "filter_future_slots",
    "get_slot_engine",
    "merge_intervals",
    # Booking
    "BookingResult",
    "BookingService",
    "get_booking_service",
]
