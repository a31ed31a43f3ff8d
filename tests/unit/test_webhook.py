"""Tests for webhook verification, parsing and processing."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import date, time

from twilio.request_validator import RequestValidator

from clinicbot.core.conversation.state import BotResponse, BotState
from clinicbot.core.messaging.types import LineConfig, SendResult, status_rank
from clinicbot.core.scheduling.types import AppointmentInfo, DoctorInfo, PatientInfo
from clinicbot.core.webhook.intents import ReplyIntent, detect_intent
from clinicbot.core.webhook.parsers import (
    parse_meta_payload,
    parse_twilio_inbound,
    parse_twilio_status,
)
from clinicbot.core.webhook.processor import MessageOutcome, WebhookProcessor
from clinicbot.core.webhook.signatures import (
    compute_meta_signature,
    verify_meta_signature,
    verify_token,
    verify_twilio_signature,
)
from clinicbot.core.webhook.status import can_apply_status, map_twilio_status


APPOINTMENT_UUID = "3f2b8c1e-9d4a-4b6e-8f0a-1c2d3e4f5a6b"


def meta_payload(messages=None, statuses=None, phone_number_id="111222"):
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {
                        "display_phone_number": "50422223333",
                        "phone_number_id": phone_number_id,
                    },
                    "contacts": [{"profile": {"name": "María"}, "wa_id": "50493133496"}],
                    "messages": messages or [],
                    "statuses": statuses or [],
                },
            }],
        }],
    }


def text_message(body="hola", id="wamid.IN1"):
    return {"from": "50493133496", "id": id, "type": "text", "text": {"body": body}}


def button_message(text="Confirmar", payload=APPOINTMENT_UUID, id="wamid.BTN1"):
    return {
        "from": "50493133496",
        "id": id,
        "type": "button",
        "button": {"text": text, "payload": payload},
    }


class FakeMessagingRepository:
    """In-memory message log keyed by provider message id."""

    def __init__(self, line=None):
        self.line = line
        self.rows: dict[str, dict] = {}

    async def get_line_by_phone_number_id(self, phone_number_id):
        return self.line

    async def get_line_by_phone(self, phone):
        return self.line

    async def message_exists(self, provider_message_id):
        return provider_message_id in self.rows

    async def log_message(self, entry):
        key = entry.provider_message_id or f"local-{len(self.rows)}"
        if key in self.rows:
            return None
        self.rows[key] = {"status": entry.status, "entry": entry}
        return key

    async def get_message_status(self, provider_message_id):
        row = self.rows.get(provider_message_id)
        return row["status"] if row else None

    async def update_message_status(self, provider_message_id, status, error_code=None, error_message=None):
        row = self.rows.get(provider_message_id)
        if row is None or status_rank(status) < status_rank(row["status"]):
            return False
        row["status"] = status
        return True


# === Signatures ===

class TestSignatures:
    """Test webhook authenticity checks."""

    def test_meta_signature_valid(self):
        body = b'{"object":"whatsapp_business_account"}'
        signature = compute_meta_signature(body, "app-secret")

        assert signature.startswith("sha256=")
        assert verify_meta_signature(body, signature, "app-secret")

    def test_meta_signature_tampered_body(self):
        signature = compute_meta_signature(b'{"a":1}', "app-secret")
        assert not verify_meta_signature(b'{"a":2}', signature, "app-secret")

    def test_meta_signature_missing(self):
        assert not verify_meta_signature(b"{}", None, "app-secret")
        assert not verify_meta_signature(b"{}", "sha256=abc", "")

    def test_twilio_signature(self):
        url = "https://bot.example.com/webhooks/twilio/inbound"
        params = {"From": "whatsapp:+50493133496", "Body": "Confirmar", "MessageSid": "SM1"}
        signature = RequestValidator("auth-token").compute_signature(url, params)

        assert verify_twilio_signature(url, params, signature, "auth-token")
        assert not verify_twilio_signature(url, params, signature, "other-token")
        assert not verify_twilio_signature(url, params, None, "auth-token")

    def test_verify_token(self):
        assert verify_token("abc", "abc")
        assert not verify_token("abc", "abd")
        assert not verify_token("abc", "")
        assert not verify_token(None, "abc")


# === Parsing ===

class TestParsers:
    """Test Meta and Twilio payload normalization."""

    def test_meta_text_message(self):
        changes = parse_meta_payload(meta_payload(messages=[text_message("Hola")]))

        assert len(changes) == 1
        change = changes[0]
        assert change.phone_number_id == "111222"
        message = change.messages[0]
        assert message.from_phone == "+50493133496"
        assert message.to_phone == "+50422223333"
        assert message.text == "Hola"
        assert message.contact_name == "María"
        assert message.appointment_id is None

    def test_meta_button_carries_appointment(self):
        changes = parse_meta_payload(meta_payload(messages=[button_message()]))

        message = changes[0].messages[0]
        assert message.text == "Confirmar"
        assert message.appointment_id == APPOINTMENT_UUID

    def test_meta_button_non_uuid_payload(self):
        changes = parse_meta_payload(meta_payload(messages=[button_message(payload="CONFIRM")]))
        assert changes[0].messages[0].appointment_id is None

    def test_meta_interactive_reply(self):
        message = {
            "from": "50493133496",
            "id": "wamid.I1",
            "type": "interactive",
            "interactive": {"button_reply": {"id": APPOINTMENT_UUID, "title": "Reagendar"}},
        }
        parsed = parse_meta_payload(meta_payload(messages=[message]))[0].messages[0]

        assert parsed.text == "Reagendar"
        assert parsed.appointment_id == APPOINTMENT_UUID

    def test_meta_statuses(self):
        statuses = [
            {"id": "wamid.OUT1", "status": "read"},
            {
                "id": "wamid.OUT2",
                "status": "failed",
                "errors": [{"code": 131047, "title": "Re-engagement message"}],
            },
            {"id": "wamid.OUT3", "status": "delivered", "errors": [{"code": 1}]},
        ]
        events = parse_meta_payload(meta_payload(statuses=statuses))[0].statuses

        assert [e.status for e in events] == ["read", "failed", "delivered"]
        assert events[1].error_code == "131047"
        assert events[1].error_message == "Re-engagement message"
        assert events[2].error_code is None

    def test_meta_other_object_ignored(self):
        assert parse_meta_payload({"object": "page", "entry": []}) == []

    def test_twilio_inbound(self):
        message = parse_twilio_inbound({
            "MessageSid": "SM1",
            "From": "whatsapp:+50493133496",
            "To": "whatsapp:+50422223333",
            "Body": "",
            "ButtonText": "Confirmar",
            "ButtonPayload": f"confirm_{APPOINTMENT_UUID}",
            "ProfileName": "María",
        })

        assert message.provider == "twilio"
        assert message.provider_message_id == "SM1"
        assert message.from_phone == "+50493133496"
        assert message.to_phone == "+50422223333"
        assert message.text == "Confirmar"
        assert message.appointment_id == APPOINTMENT_UUID

    def test_twilio_inbound_sms_sid_fallback(self):
        message = parse_twilio_inbound({"SmsMessageSid": "SM2", "From": "+50493133496", "Body": "sí"})
        assert message.provider_message_id == "SM2"
        assert message.text == "sí"

    def test_twilio_status(self):
        event = parse_twilio_status({
            "MessageSid": "SM1", "MessageStatus": "undelivered",
            "ErrorCode": "63016", "ErrorMessage": "Outside window",
        })

        assert event.status == "failed"
        assert event.error_code == "63016"

    def test_twilio_status_errors_only_when_failed(self):
        event = parse_twilio_status({"MessageSid": "SM1", "MessageStatus": "delivered", "ErrorCode": "1"})
        assert event.error_code is None

    def test_twilio_status_missing_sid(self):
        assert parse_twilio_status({"MessageStatus": "sent"}) is None

    @pytest.mark.parametrize("raw,mapped", [
        ("queued", "sent"), ("sending", "sent"), ("delivered", "delivered"),
        ("read", "read"), ("undelivered", "failed"),
    ])
    def test_twilio_status_map(self, raw, mapped):
        assert map_twilio_status(raw) == mapped


# === Intents / status ordering ===

class TestIntents:
    """Test reply intent detection."""

    @pytest.mark.parametrize("text", ["Confirmar", "confirmo", "Sí", "si", "sí, ahí estaré"])
    def test_confirm(self, text):
        assert detect_intent(text) == ReplyIntent.CONFIRM

    @pytest.mark.parametrize("text", ["Reagendar", "quiero cambiar la hora", "reschedule"])
    def test_reschedule(self, text):
        assert detect_intent(text) == ReplyIntent.RESCHEDULE

    @pytest.mark.parametrize("text", ["", "gracias", "sin problema", "asistiré"])
    def test_unknown(self, text):
        assert detect_intent(text) == ReplyIntent.UNKNOWN


class TestStatusOrdering:
    """Test forward-only status transitions."""

    def test_forward(self):
        assert can_apply_status("sent", "delivered")
        assert can_apply_status("delivered", "read")
        assert can_apply_status(None, "sent")

    def test_backward_rejected(self):
        assert not can_apply_status("read", "sent")
        assert not can_apply_status("read", "delivered")
        assert not can_apply_status("delivered", "failed")

    def test_same_rank(self):
        assert can_apply_status("sent", "failed")


# === Processor ===

class TestWebhookProcessor:
    """Test inbound processing against fakes."""

    @pytest.fixture
    def legacy_line(self):
        return LineConfig(id="line-1", phone_number="+50422223333", provider="meta", organization_id="org-1")

    @pytest.fixture
    def bot_line(self):
        return LineConfig(
            id="line-1", phone_number="+50422223333", provider="meta",
            organization_id="org-1", bot_enabled=True,
        )

    @pytest.fixture
    def appointment(self):
        return AppointmentInfo(
            id=APPOINTMENT_UUID,
            doctor_id="doc-1",
            patient_id="pat-1",
            date=date(2025, 10, 15),
            time=time(15, 0),
            duration_minutes=60,
            status="agendada",
            organization_id="org-1",
        )

    @pytest.fixture
    def scheduling(self, appointment):
        repo = MagicMock()
        repo.find_patient_by_phone = AsyncMock(
            return_value=PatientInfo(id="pat-1", name="María Pérez", phone="+50493133496")
        )
        repo.get_appointment = AsyncMock(return_value=appointment)
        repo.find_recent_active_appointments = AsyncMock(return_value=[appointment])
        repo.get_patient = AsyncMock(return_value=None)
        repo.update_appointment_status = AsyncMock(return_value=True)
        repo.get_doctor = AsyncMock(return_value=DoctorInfo(
            id="doc-1", name="Ana López", prefix="Dra.", phone="+50488887777",
        ))
        return repo

    @pytest.fixture
    def gateway(self):
        gateway = MagicMock()
        gateway.send = AsyncMock(return_value=SendResult(ok=True, status="sent"))
        return gateway

    @pytest.fixture
    def machine(self):
        machine = MagicMock()
        machine.handle_message = AsyncMock(return_value=BotResponse(
            message="¡Hola!", options=["Agendar cita"], next_state=BotState.MAIN_MENU,
        ))
        return machine

    def _processor(self, line, scheduling, gateway, machine):
        messaging = FakeMessagingRepository(line)
        processor = WebhookProcessor(
            messaging_repository=messaging,
            scheduling_repository=scheduling,
            gateway=gateway,
            state_machine=machine,
        )
        return processor, messaging

    @pytest.mark.asyncio
    async def test_legacy_confirm_by_payload(self, legacy_line, scheduling, gateway, machine):
        """A confirm button updates the appointment and thanks the patient."""
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[button_message()]))

        assert summary.outcomes == [MessageOutcome.CONFIRMED]
        scheduling.get_appointment.assert_awaited_once_with(APPOINTMENT_UUID)
        scheduling.update_appointment_status.assert_awaited_once_with(APPOINTMENT_UUID, "confirmada")
        sent = gateway.send.call_args.args[0]
        assert sent.type == "patient_confirmed"
        assert sent.template_params == {"1": "3:00 PM"}
        assert sent.to == "+50493133496"
        logged = messaging.rows["wamid.BTN1"]["entry"]
        assert logged.direction == "inbound"
        assert logged.appointment_id == APPOINTMENT_UUID
        machine.handle_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_legacy_fuzzy_match(self, legacy_line, scheduling, gateway, machine, appointment):
        """Without a payload the most recent active appointment is used and flagged."""
        second = AppointmentInfo(
            id="other", doctor_id="doc-1", patient_id="pat-1", date=date(2025, 10, 16),
            time=time(9, 0), duration_minutes=60, status="agendada",
        )
        scheduling.find_recent_active_appointments = AsyncMock(return_value=[appointment, second])
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[text_message("Sí")]))

        assert summary.outcomes == [MessageOutcome.CONFIRMED]
        raw = messaging.rows["wamid.IN1"]["entry"].raw_payload
        assert raw["appointment_match"] == "fuzzy"
        assert raw["appointment_match_ambiguous"] is True

    @pytest.mark.asyncio
    async def test_legacy_reschedule_notifies_doctor_and_patient(
        self, legacy_line, scheduling, gateway, machine
    ):
        processor, _ = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_meta(
            meta_payload(messages=[button_message(text="Reagendar")])
        )

        assert summary.outcomes == [MessageOutcome.RESCHEDULE_REQUESTED]
        scheduling.update_appointment_status.assert_awaited_once_with(APPOINTMENT_UUID, "reagendar")
        doctor_msg, patient_msg = [c.args[0] for c in gateway.send.call_args_list]
        assert doctor_msg.type == "reschedule_doctor"
        assert doctor_msg.to == "+50488887777"
        assert doctor_msg.template_params == {"1": "María Pérez", "2": "+50493133496"}
        assert patient_msg.type == "patient_reschedule"

    @pytest.mark.asyncio
    async def test_legacy_unknown_intent_only_logs(self, legacy_line, scheduling, gateway, machine):
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[text_message("gracias")]))

        assert summary.outcomes == [MessageOutcome.LOGGED]
        assert "wamid.IN1" in messaging.rows
        scheduling.update_appointment_status.assert_not_called()
        gateway.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, legacy_line, scheduling, gateway, machine):
        """The same provider message id twice: one row, one status change."""
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)
        payload = meta_payload(messages=[button_message()])

        first = await processor.process_meta(payload)
        second = await processor.process_meta(payload)

        assert first.outcomes == [MessageOutcome.CONFIRMED]
        assert second.outcomes == [MessageOutcome.DUPLICATE]
        assert len(messaging.rows) == 1
        scheduling.update_appointment_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bot_line_runs_state_machine(self, bot_line, scheduling, gateway, machine):
        processor, messaging = self._processor(bot_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[text_message("hola")]))

        assert summary.outcomes == [MessageOutcome.BOT]
        kwargs = machine.handle_message.call_args.kwargs
        assert kwargs["line_id"] == "line-1"
        assert kwargs["patient_phone"] == "+50493133496"
        assert kwargs["organization_id"] == "org-1"
        reply = gateway.send.call_args.args[0]
        assert reply.type == "generic"
        assert reply.body == "¡Hola!\n\n1. Agendar cita"
        assert reply.line_id == "line-1"
        assert "wamid.IN1" in messaging.rows

    @pytest.mark.asyncio
    async def test_bot_line_template_reply_uses_legacy(self, bot_line, scheduling, gateway, machine):
        """Quick replies to a template keep the confirmation flow even on bot lines."""
        processor, _ = self._processor(bot_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[button_message()]))

        assert summary.outcomes == [MessageOutcome.CONFIRMED]
        machine.handle_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_event_error_is_counted(self, legacy_line, scheduling, gateway, machine):
        """One failing event does not stop the others."""
        scheduling.get_appointment = AsyncMock(side_effect=RuntimeError("db down"))
        processor, _ = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_meta(meta_payload(messages=[
            button_message(id="wamid.A"), text_message("gracias", id="wamid.B"),
        ]))

        assert summary.errors == 1
        assert summary.outcomes == [MessageOutcome.LOGGED]

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, legacy_line, scheduling, gateway, machine):
        """read then sent leaves the row at read."""
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)
        messaging.rows["wamid.OUT1"] = {"status": "sent", "entry": None}

        await processor.process_meta(meta_payload(statuses=[{"id": "wamid.OUT1", "status": "read"}]))
        await processor.process_meta(meta_payload(statuses=[{"id": "wamid.OUT1", "status": "sent"}]))

        assert messaging.rows["wamid.OUT1"]["status"] == "read"

    @pytest.mark.asyncio
    async def test_status_for_unknown_message(self, legacy_line, scheduling, gateway, machine):
        processor, _ = self._processor(legacy_line, scheduling, gateway, machine)

        applied = await processor.process_twilio_status({"MessageSid": "SMX", "MessageStatus": "delivered"})

        assert applied is False

    @pytest.mark.asyncio
    async def test_twilio_inbound_confirm(self, legacy_line, scheduling, gateway, machine):
        processor, messaging = self._processor(legacy_line, scheduling, gateway, machine)

        summary = await processor.process_twilio_inbound({
            "MessageSid": "SM1",
            "From": "whatsapp:+50493133496",
            "To": "whatsapp:+50422223333",
            "ButtonText": "Confirmar",
            "ButtonPayload": APPOINTMENT_UUID,
        })

        assert summary.outcomes == [MessageOutcome.CONFIRMED]
        assert messaging.rows["SM1"]["entry"].provider == "twilio"
