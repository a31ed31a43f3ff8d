"""
Inbound Webhook Processor

Turns verified provider deliveries into side effects:
- Patient messages on bot-enabled lines run through the state machine
  and the reply goes back through the messaging gateway.
- Replies to confirmation/reminder templates (legacy flow) update the
  appointment status and notify patient and doctor.
- Delivery statuses move message log rows forward, never back.

Every message is deduplicated by provider message id before any write.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Mapping, Optional

from clinicbot.config import get_settings
from clinicbot.core.conversation.machine import ConversationStateMachine, get_state_machine
from clinicbot.core.messaging.gateway import MessagingGateway, get_messaging_gateway
from clinicbot.core.messaging.phone import mask_phone, to_local
from clinicbot.core.messaging.repository import MessagingRepository, get_messaging_repository
from clinicbot.core.messaging.types import LineConfig, MessageLogEntry, MessageType, SendRequest
from clinicbot.core.scheduling.repository import SchedulingRepository, get_scheduling_repository
from clinicbot.core.scheduling.timeutils import format_time_12h, tenant_today
from clinicbot.core.scheduling.types import AppointmentInfo, PatientInfo
from clinicbot.core.webhook.intents import ReplyIntent, detect_intent
from clinicbot.core.webhook.parsers import (
    InboundMessage,
    StatusEvent,
    parse_meta_payload,
    parse_twilio_inbound,
    parse_twilio_status,
)
from clinicbot.core.webhook.status import can_apply_status
from clinicbot.models.database import AppointmentStatus

logger = logging.getLogger(__name__)


class MessageOutcome:
    DUPLICATE = "duplicate"
    BOT = "bot"
    CONFIRMED = "confirmed"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    LOGGED = "logged"


@dataclass
class WebhookSummary:
    """Counts for one delivery, mostly for logs and tests."""

    messages: int = 0
    statuses: int = 0
    errors: int = 0
    outcomes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "messages": self.messages,
            "statuses": self.statuses,
            "errors": self.errors,
            "outcomes": self.outcomes,
        }


class WebhookProcessor:
    """Processes Meta and Twilio webhook deliveries."""

    def __init__(
        self,
        messaging_repository: Optional[MessagingRepository] = None,
        scheduling_repository: Optional[SchedulingRepository] = None,
        gateway: Optional[MessagingGateway] = None,
        state_machine: Optional[ConversationStateMachine] = None,
    ):
        self._messaging = messaging_repository
        self._scheduling = scheduling_repository
        self._gateway = gateway
        self._machine = state_machine

    def _get_messaging(self) -> MessagingRepository:
        if self._messaging is None:
            self._messaging = get_messaging_repository()
        return self._messaging

    def _get_scheduling(self) -> SchedulingRepository:
        if self._scheduling is None:
            self._scheduling = get_scheduling_repository()
        return self._scheduling

    def _get_gateway(self) -> MessagingGateway:
        if self._gateway is None:
            self._gateway = get_messaging_gateway()
        return self._gateway

    def _get_machine(self) -> ConversationStateMachine:
        if self._machine is None:
            self._machine = get_state_machine()
        return self._machine

    # === Entry points ===

    async def process_meta(self, payload: Mapping[str, Any]) -> WebhookSummary:
        """Process one Meta delivery (already signature-checked)."""
        summary = WebhookSummary()

        for change in parse_meta_payload(payload):
            line = None
            if change.phone_number_id:
                line = await self._get_messaging().get_line_by_phone_number_id(change.phone_number_id)
                if line is None:
                    logger.warning(f"No active line for phone_number_id={change.phone_number_id}")

            tasks = [self.handle_message(line, m) for m in change.messages]
            tasks += [self.handle_status(s) for s in change.statuses]
            summary.messages += len(change.messages)
            summary.statuses += len(change.statuses)

            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    summary.errors += 1
                    logger.error(
                        f"Webhook event failed: {result}",
                        exc_info=(type(result), result, result.__traceback__),
                    )
                elif isinstance(result, str):
                    summary.outcomes.append(result)

        return summary

    async def process_twilio_inbound(self, form: Mapping[str, str]) -> WebhookSummary:
        """Process one Twilio inbound message (already signature-checked)."""
        summary = WebhookSummary(messages=1)
        message = parse_twilio_inbound(form)
        line = await self._get_messaging().get_line_by_phone(message.to_phone) if message.to_phone else None
        try:
            summary.outcomes.append(await self.handle_message(line, message))
        except Exception as e:
            summary.errors += 1
            logger.error(f"Twilio inbound failed: {e}", exc_info=True)
        return summary

    async def process_twilio_status(self, form: Mapping[str, str]) -> bool:
        """Apply a Twilio status callback. False when malformed or skipped."""
        event = parse_twilio_status(form)
        if event is None:
            logger.warning("Twilio status callback without MessageSid/MessageStatus")
            return False
        return await self.handle_status(event)

    async def resolve_twilio_line(self, form: Mapping[str, str]) -> Optional[LineConfig]:
        """Line addressed by a Twilio post, used to pick the signing token."""
        to_phone = form.get("To")
        if not to_phone:
            return None
        return await self._get_messaging().get_line_by_phone(to_phone)

    # === Messages ===

    async def handle_message(self, line: Optional[LineConfig], message: InboundMessage) -> str:
        if message.provider_message_id and await self._get_messaging().message_exists(
            message.provider_message_id
        ):
            logger.info(f"Duplicate message skipped: {message.provider_message_id}")
            return MessageOutcome.DUPLICATE

        logger.info(
            f"Inbound {message.provider} from {mask_phone(message.from_phone)} "
            f"payload_appointment={message.appointment_id} bot={bool(line and line.bot_enabled)}"
        )

        if line and line.bot_enabled and line.organization_id and not message.appointment_id:
            return await self._handle_bot(line, message)
        return await self._handle_legacy(line, message)

    async def _find_patient(self, phone: str, organization_id: Optional[str] = None) -> Optional[PatientInfo]:
        if not phone:
            return None
        return await self._get_scheduling().find_patient_by_phone(
            phone, to_local(phone), organization_id=organization_id
        )

    async def _log_inbound(
        self,
        line: Optional[LineConfig],
        message: InboundMessage,
        organization_id: Optional[str],
        patient_id: Optional[str] = None,
        appointment: Optional[AppointmentInfo] = None,
        raw_payload: Optional[dict] = None,
    ) -> bool:
        """Log the inbound row. False when another delivery already logged it."""
        logged = await self._get_messaging().log_message(MessageLogEntry(
            direction="inbound",
            status="received",
            to_phone=message.to_phone,
            from_phone=message.from_phone,
            body=message.text or None,
            type=MessageType.PATIENT_REPLY.value,
            provider=message.provider,
            provider_message_id=message.provider_message_id,
            appointment_id=appointment.id if appointment else None,
            patient_id=patient_id,
            doctor_id=appointment.doctor_id if appointment else None,
            organization_id=organization_id,
            line_id=line.id if line else None,
            raw_payload=raw_payload if raw_payload is not None else message.raw,
        ))
        return logged is not None

    async def _handle_bot(self, line: LineConfig, message: InboundMessage) -> str:
        patient_id = None
        try:
            patient = await self._find_patient(message.from_phone)
            patient_id = patient.id if patient else None
        except Exception as e:
            logger.warning(f"Patient lookup for log failed: {e}")

        if not await self._log_inbound(line, message, line.organization_id, patient_id=patient_id):
            return MessageOutcome.DUPLICATE

        response = await self._get_machine().handle_message(
            line_id=line.id,
            patient_phone=message.from_phone,
            message_text=message.text or "",
            organization_id=line.organization_id,
        )
        if not response.message:
            return MessageOutcome.BOT

        result = await self._get_gateway().send(SendRequest(
            to=message.from_phone,
            type=MessageType.GENERIC.value,
            body=response.render(),
            patient_id=patient_id,
            organization_id=line.organization_id,
            line_id=line.id,
        ))
        if not result.ok:
            logger.error(f"Bot reply to {mask_phone(message.from_phone)} failed: {result.error_code}")
        return MessageOutcome.BOT

    async def _handle_legacy(self, line: Optional[LineConfig], message: InboundMessage) -> str:
        settings = get_settings()
        scheduling = self._get_scheduling()
        organization_id = line.organization_id if line else None

        patient = await self._find_patient(message.from_phone)

        appointment: Optional[AppointmentInfo] = None
        raw_payload = dict(message.raw)

        if message.appointment_id:
            appointment = await scheduling.get_appointment(message.appointment_id)
            logger.info(f"Payload appointment {message.appointment_id} found={appointment is not None}")
        elif patient:
            since = tenant_today() - timedelta(days=settings.legacy_lookback_days)
            candidates = await scheduling.find_recent_active_appointments(patient.id, since, limit=2)
            if candidates:
                appointment = candidates[0]
                raw_payload["appointment_match"] = "fuzzy"
                if len(candidates) > 1:
                    raw_payload["appointment_match_ambiguous"] = True
                    logger.warning(
                        f"Ambiguous fuzzy appointment match for patient {patient.id}: "
                        f"picked {appointment.id}"
                    )

        if appointment and patient is None:
            patient = await scheduling.get_patient(appointment.patient_id)

        organization_id = organization_id or (appointment.organization_id if appointment else None)
        intent = detect_intent(message.text)
        logger.info(
            f"Legacy reply intent={intent.value} patient={patient.id if patient else None} "
            f"appointment={appointment.id if appointment else None}"
        )

        if not await self._log_inbound(
            line,
            message,
            organization_id,
            patient_id=patient.id if patient else None,
            appointment=appointment,
            raw_payload=raw_payload,
        ):
            return MessageOutcome.DUPLICATE

        if appointment is None or intent == ReplyIntent.UNKNOWN:
            return MessageOutcome.LOGGED

        if intent == ReplyIntent.CONFIRM:
            await scheduling.update_appointment_status(appointment.id, AppointmentStatus.CONFIRMADA.value)
            logger.info(f"Appointment {appointment.id} confirmed by patient")
            await self._get_gateway().send(SendRequest(
                to=message.from_phone,
                type=MessageType.PATIENT_CONFIRMED.value,
                template_params={"1": format_time_12h(appointment.time)},
                appointment_id=appointment.id,
                patient_id=patient.id if patient else None,
                doctor_id=appointment.doctor_id,
                organization_id=organization_id,
                line_id=line.id if line else None,
            ))
            return MessageOutcome.CONFIRMED

        await scheduling.update_appointment_status(appointment.id, AppointmentStatus.REAGENDAR.value)
        logger.info(f"Appointment {appointment.id} flagged for rescheduling")
        await self._notify_reschedule(line, message, appointment, patient, organization_id)
        return MessageOutcome.RESCHEDULE_REQUESTED

    async def _notify_reschedule(
        self,
        line: Optional[LineConfig],
        message: InboundMessage,
        appointment: AppointmentInfo,
        patient: Optional[PatientInfo],
        organization_id: Optional[str],
    ) -> None:
        gateway = self._get_gateway()
        line_id = line.id if line else None
        patient_id = patient.id if patient else None

        doctor = await self._get_scheduling().get_doctor(appointment.doctor_id)
        if doctor and doctor.phone:
            await gateway.send(SendRequest(
                to=doctor.phone,
                type=MessageType.RESCHEDULE_DOCTOR.value,
                template_params={
                    "1": patient.name if patient else message.contact_name or "",
                    "2": message.from_phone,
                },
                appointment_id=appointment.id,
                patient_id=patient_id,
                doctor_id=appointment.doctor_id,
                organization_id=organization_id,
                line_id=line_id,
            ))

        await gateway.send(SendRequest(
            to=message.from_phone,
            type=MessageType.PATIENT_RESCHEDULE.value,
            template_params={},
            appointment_id=appointment.id,
            patient_id=patient_id,
            doctor_id=appointment.doctor_id,
            organization_id=organization_id,
            line_id=line_id,
        ))

    # === Statuses ===

    async def handle_status(self, event: StatusEvent) -> bool:
        """Apply a delivery status if it moves the row forward."""
        repository = self._get_messaging()
        current = await repository.get_message_status(event.provider_message_id)
        if current is None:
            logger.debug(f"Status for unknown message {event.provider_message_id}")
            return False

        if not can_apply_status(current, event.status):
            logger.info(
                f"Skipping backward status {current} -> {event.status} "
                f"for {event.provider_message_id}"
            )
            return False

        return await repository.update_message_status(
            event.provider_message_id,
            event.status,
            error_code=event.error_code,
            error_message=event.error_message,
        )


# Singleton
_processor: Optional[WebhookProcessor] = None


def get_webhook_processor() -> WebhookProcessor:
    """Get or create the webhook processor singleton."""
    global _processor
    if _processor is None:
        _processor = WebhookProcessor()
    return _processor
