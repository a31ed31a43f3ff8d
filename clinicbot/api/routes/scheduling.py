"""
Scheduling API Endpoints.

Slot and month availability for staff tools, and appointment creation
with the WhatsApp confirmation template.
"""

import logging
import re
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import Field, field_validator

from clinicbot.api.middleware.auth import require_internal_secret
from clinicbot.api.schemas import CamelModel, ErrorResponse
from clinicbot.config import settings
from clinicbot.core.exceptions import NotFoundError, SlotConflictError, ValidationError
from clinicbot.core.messaging.gateway import MessagingGateway, get_messaging_gateway
from clinicbot.core.messaging.types import MessageType, SendRequest
from clinicbot.core.scheduling.booking import BookingService, get_booking_service
from clinicbot.core.scheduling.repository import SchedulingRepository, get_scheduling_repository
from clinicbot.core.scheduling.slots import SlotEngine, filter_future_slots, get_slot_engine
from clinicbot.core.scheduling.timeutils import (
    format_appointment_datetime,
    minutes_to_hhmm,
    tenant_now,
    to_minutes,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/scheduling",
    tags=["Scheduling"],
    dependencies=[Depends(require_internal_secret)],
)

_MONTH_PATTERN = re.compile(r"^\d{4}-\d{2}$")


class SlotsResponse(CamelModel):
    ok: bool = True
    doctor_id: str
    date: date
    duration_minutes: int
    slots: list[str]


class DayAvailabilityModel(CamelModel):
    date: str
    dow: int
    working: bool
    can_fit: bool


class DaysResponse(CamelModel):
    ok: bool = True
    doctor_id: str
    month: str
    duration_minutes: int
    timezone: str
    days: list[DayAvailabilityModel]


class CreateAppointmentRequest(CamelModel):
    """New appointment from a staff tool."""

    doctor_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    date: date
    time: str = Field(..., examples=["15:00"])
    duration_minutes: int = Field(default=60, ge=15, le=480)
    notes: Optional[str] = Field(default=None, max_length=2000)
    organization_id: Optional[str] = None
    calendar_id: Optional[str] = None

    @field_validator("time")
    @classmethod
    def normalize_time(cls, value: str) -> str:
        try:
            return minutes_to_hhmm(to_minutes(value))
        except ValueError as e:
            raise ValueError(f"time must be HH:MM: {e}") from e


class AppointmentModel(CamelModel):
    id: str
    doctor_id: str
    patient_id: str
    date: date
    time: str
    duration_minutes: int
    status: str = "agendada"
    calendar_id: Optional[str] = None
    organization_id: Optional[str] = None


class CreateAppointmentResponse(CamelModel):
    ok: bool = True
    appointment: AppointmentModel
    whatsapp_sent: bool = False
    whatsapp_error: Optional[str] = None
    provider_message_id: Optional[str] = None


@router.get(
    "/slots",
    response_model=SlotsResponse,
    summary="Available start times for one day",
)
async def get_slots(
    doctor_id: str = Query(..., alias="doctorId"),
    day: date = Query(..., alias="date"),
    duration_minutes: int = Query(default=60, alias="durationMinutes", ge=1, le=480),
    granularity: Optional[int] = Query(default=None, ge=5, le=240),
    calendar_id: Optional[str] = Query(default=None, alias="calendarId"),
    engine: SlotEngine = Depends(get_slot_engine),
) -> SlotsResponse:
    slots = await engine.available_slots(
        doctor_id,
        day,
        duration_minutes,
        granularity=granularity,
        calendar_id=calendar_id,
    )
    slots = filter_future_slots(slots, day, tenant_now())
    return SlotsResponse(
        doctor_id=doctor_id,
        date=day,
        duration_minutes=duration_minutes,
        slots=slots,
    )


@router.get(
    "/days",
    response_model=DaysResponse,
    summary="Month availability",
)
async def get_days(
    doctor_id: str = Query(..., alias="doctorId"),
    month: str = Query(..., description="YYYY-MM"),
    duration_minutes: int = Query(..., alias="durationMinutes", ge=1, le=480),
    calendar_id: Optional[str] = Query(default=None, alias="calendarId"),
    engine: SlotEngine = Depends(get_slot_engine),
) -> DaysResponse:
    if not _MONTH_PATTERN.match(month):
        raise ValidationError("month must be YYYY-MM")
    year, month_number = (int(part) for part in month.split("-"))

    days = await engine.available_days(
        doctor_id, year, month_number, duration_minutes, calendar_id=calendar_id
    )
    return DaysResponse(
        doctor_id=doctor_id,
        month=month,
        duration_minutes=duration_minutes,
        timezone=settings.tenant_timezone,
        days=[DayAvailabilityModel(**asdict(d)) for d in days],
    )


@router.post(
    "/appointments",
    response_model=CreateAppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Create an appointment and send the WhatsApp confirmation",
    responses={
        404: {"model": ErrorResponse, "description": "Doctor or patient not found"},
        409: {"model": ErrorResponse, "description": "Slot already taken"},
    },
)
async def create_appointment(
    request: CreateAppointmentRequest,
    booking: BookingService = Depends(get_booking_service),
    repository: SchedulingRepository = Depends(get_scheduling_repository),
    gateway: MessagingGateway = Depends(get_messaging_gateway),
):
    patient = await repository.get_patient(request.patient_id)
    if patient is None:
        raise NotFoundError("Paciente no encontrado")
    doctor = await repository.get_doctor(request.doctor_id)
    if doctor is None:
        raise NotFoundError("Doctor no encontrado")

    organization_id = request.organization_id or patient.organization_id or doctor.organization_id

    result = await booking.book(
        doctor_id=request.doctor_id,
        patient_id=request.patient_id,
        day=request.date,
        time_str=request.time,
        duration_minutes=request.duration_minutes,
        organization_id=organization_id,
        calendar_id=request.calendar_id,
        notes=request.notes,
    )
    if not result.success:
        return JSONResponse(
            status_code=(
                status.HTTP_409_CONFLICT
                if result.error_code == SlotConflictError.code
                else status.HTTP_400_BAD_REQUEST
            ),
            content=ErrorResponse(error=result.message or "Error al crear la cita", error_code=result.error_code)
            .model_dump(by_alias=True),
        )

    response = CreateAppointmentResponse(
        appointment=AppointmentModel(
            id=result.booking_id,
            doctor_id=request.doctor_id,
            patient_id=request.patient_id,
            date=request.date,
            time=request.time,
            duration_minutes=request.duration_minutes,
            calendar_id=request.calendar_id,
            organization_id=organization_id,
        ),
    )

    if not patient.phone:
        logger.warning(f"Patient {patient.id} has no phone, confirmation skipped")
        response.whatsapp_error = "El paciente no tiene número de teléfono"
        return response

    sent = await gateway.send(SendRequest(
        to=patient.phone,
        type=MessageType.CONFIRMATION.value,
        template_params={
            "1": patient.name,
            "2": doctor.display_name,
            "3": format_appointment_datetime(request.date, request.time),
        },
        appointment_id=result.booking_id,
        patient_id=patient.id,
        doctor_id=doctor.id,
        organization_id=organization_id,
    ))
    response.whatsapp_sent = sent.ok
    response.provider_message_id = sent.provider_message_id
    if not sent.ok:
        response.whatsapp_error = sent.error or sent.error_code
    return response
