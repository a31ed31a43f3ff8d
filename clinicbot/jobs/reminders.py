#!/usr/bin/env python3
"""
24h Reminder Job

Sends the reminder_24h template for every active appointment scheduled
tomorrow (tenant timezone) that has not been reminded yet. Safe to
re-run: reminded appointments are stamped and skipped next time.

Usage:
    python -m clinicbot.jobs.reminders
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from clinicbot.core.messaging.gateway import MessagingGateway, get_messaging_gateway
from clinicbot.core.messaging.types import MessageType, SendRequest
from clinicbot.core.scheduling.repository import SchedulingRepository, get_scheduling_repository
from clinicbot.core.scheduling.timeutils import (
    _utcnow,
    format_date,
    format_time_12h,
    tenant_today,
)
from clinicbot.core.scheduling.types import AppointmentInfo

logger = logging.getLogger(__name__)


@dataclass
class ReminderResult:
    appointment_id: str
    patient_name: str
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {
            "appointmentId": self.appointment_id,
            "patientName": self.patient_name,
            "success": self.success,
        }
        if self.provider_message_id:
            result["providerMessageId"] = self.provider_message_id
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class ReminderSummary:
    date: str
    total: int = 0
    sent: int = 0
    failed: int = 0
    results: list[ReminderResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "date": self.date,
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class ReminderJob:
    """Runs one reminder pass."""

    def __init__(
        self,
        repository: Optional[SchedulingRepository] = None,
        gateway: Optional[MessagingGateway] = None,
    ):
        self._repository = repository
        self._gateway = gateway

    def _get_repository(self) -> SchedulingRepository:
        if self._repository is None:
            self._repository = get_scheduling_repository()
        return self._repository

    def _get_gateway(self) -> MessagingGateway:
        if self._gateway is None:
            self._gateway = get_messaging_gateway()
        return self._gateway

    async def run(self, now: Optional[datetime] = None) -> ReminderSummary:
        now = now or _utcnow()
        target = tenant_today(now) + timedelta(days=1)
        summary = ReminderSummary(date=target.isoformat())

        appointments = await self._get_repository().get_reminder_candidates(target)
        summary.total = len(appointments)
        logger.info(f"Reminder run for {target}: {summary.total} appointments")

        for appointment in appointments:
            try:
                result = await self._remind(appointment)
            except Exception as e:
                logger.error(f"Reminder for appointment {appointment.id} failed: {e}", exc_info=True)
                result = ReminderResult(appointment.id, "Unknown", False, error=str(e))
            summary.results.append(result)
            if result.success:
                summary.sent += 1
            else:
                summary.failed += 1

        logger.info(f"Reminder run for {target} done: sent={summary.sent} failed={summary.failed}")
        return summary

    async def _remind(self, appointment: AppointmentInfo) -> ReminderResult:
        repository = self._get_repository()

        patient = await repository.get_patient(appointment.patient_id)
        if patient is None:
            logger.error(f"Patient not found for appointment {appointment.id}")
            return ReminderResult(appointment.id, "Unknown", False, error="Patient not found")
        if not patient.phone:
            logger.warning(f"Patient {patient.id} has no phone")
            return ReminderResult(appointment.id, patient.name, False, error="No phone number")

        doctor = await repository.get_doctor(appointment.doctor_id)
        if doctor is None:
            logger.error(f"Doctor not found for appointment {appointment.id}")
            return ReminderResult(appointment.id, patient.name, False, error="Doctor not found")

        result = await self._get_gateway().send(SendRequest(
            to=patient.phone,
            type=MessageType.REMINDER_24H.value,
            template_params={
                "1": patient.name,
                "2": doctor.display_name,
                "3": format_date(appointment.date),
                "4": format_time_12h(appointment.time),
            },
            appointment_id=appointment.id,
            patient_id=patient.id,
            doctor_id=doctor.id,
            organization_id=appointment.organization_id,
        ))

        if not result.ok:
            return ReminderResult(
                appointment.id,
                patient.name,
                False,
                error=result.error or result.error_code,
            )

        await repository.mark_reminder_sent(appointment.id, _utcnow())
        return ReminderResult(
            appointment.id,
            patient.name,
            True,
            provider_message_id=result.provider_message_id,
        )


async def main() -> int:
    from dotenv import load_dotenv

    from clinicbot.infra.database import close_db
    from clinicbot.infra.http import close_http_client

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        summary = await ReminderJob().run()
    finally:
        await close_http_client()
        await close_db()

    print(f"{summary.date}: total={summary.total} sent={summary.sent} failed={summary.failed}")
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
