"""Tests for the HTTP API."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from clinicbot.api.routes.jobs import get_reminder_job
from clinicbot.config import Settings, get_settings
from clinicbot.core.conversation.machine import get_state_machine
from clinicbot.core.conversation.state import BotResponse, BotState
from clinicbot.core.messaging.gateway import get_messaging_gateway
from clinicbot.core.messaging.types import LineConfig, SendResult
from clinicbot.core.scheduling.booking import BookingResult, get_booking_service
from clinicbot.core.scheduling.repository import get_scheduling_repository
from clinicbot.core.scheduling.slots import DayAvailability, get_slot_engine
from clinicbot.core.scheduling.types import DoctorInfo, PatientInfo
from clinicbot.core.webhook.processor import WebhookSummary, get_webhook_processor
from clinicbot.core.webhook.signatures import compute_meta_signature
from clinicbot.jobs.reminders import ReminderSummary
from clinicbot.main import app


SECRET = "internal-secret"
AUTH = {"x-internal-secret": SECRET}
FUTURE_DAY = "2099-01-05"


@pytest.fixture
def test_settings():
    return Settings(
        internal_function_secret=SECRET,
        meta_app_secret="meta-secret",
        meta_webhook_verify_token="verify-me",
        twilio_auth_token="twilio-token",
        twilio_status_webhook_token="status-token",
        twilio_webhook_url="https://bot.example.com/webhooks/twilio/inbound",
    )


@pytest.fixture
def processor():
    processor = MagicMock()
    processor.process_meta = AsyncMock(return_value=WebhookSummary(messages=1))
    processor.process_twilio_inbound = AsyncMock(return_value=WebhookSummary(messages=1))
    processor.process_twilio_status = AsyncMock(return_value=True)
    processor.resolve_twilio_line = AsyncMock(return_value=None)
    return processor


@pytest.fixture
def machine():
    machine = MagicMock()
    machine.handle_message = AsyncMock(return_value=BotResponse(
        message="¡Hola!", options=["Agendar cita", "FAQs"], next_state=BotState.MAIN_MENU,
    ))
    return machine


@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.send = AsyncMock(return_value=SendResult(
        ok=True, status="sent", provider="meta", provider_message_id="wamid.1",
    ))
    return gateway


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.available_slots = AsyncMock(return_value=["08:00", "10:00"])
    engine.available_days = AsyncMock(return_value=[
        DayAvailability(date="2099-01-01", dow=4, working=True, can_fit=False),
    ])
    return engine


@pytest.fixture
def booking():
    service = MagicMock()
    service.book = AsyncMock(return_value=BookingResult(success=True, booking_id="appt-new"))
    return service


@pytest.fixture
def scheduling():
    repo = MagicMock()
    repo.get_patient = AsyncMock(return_value=PatientInfo(
        id="pat-1", name="María Pérez", phone="+50493133496", organization_id="org-1",
    ))
    repo.get_doctor = AsyncMock(return_value=DoctorInfo(id="doc-1", name="Ana López", prefix="Dra."))
    return repo


@pytest.fixture
def reminder_job():
    job = MagicMock()
    job.run = AsyncMock(return_value=ReminderSummary(date="2099-01-06", total=0))
    return job


@pytest.fixture
def client(test_settings, processor, machine, gateway, engine, booking, scheduling, reminder_job):
    app.dependency_overrides = {
        get_settings: lambda: test_settings,
        get_webhook_processor: lambda: processor,
        get_state_machine: lambda: machine,
        get_messaging_gateway: lambda: gateway,
        get_slot_engine: lambda: engine,
        get_booking_service: lambda: booking,
        get_scheduling_repository: lambda: scheduling,
        get_reminder_job: lambda: reminder_job,
    }
    yield TestClient(app)
    app.dependency_overrides = {}


class TestInternalAuth:
    """Test the shared-secret guard."""

    def test_missing_secret(self, client):
        response = client.post("/bot/message", json={"lineId": "l", "patientPhone": "p"})
        assert response.status_code == 401

    def test_wrong_secret(self, client):
        response = client.post(
            "/messaging/send",
            json={"to": "+50493133496"},
            headers={"x-internal-secret": "nope"},
        )
        assert response.status_code == 401

    def test_unset_secret_rejects_everything(self, client, test_settings):
        test_settings.internal_function_secret = ""
        response = client.post("/jobs/send-reminders", headers={"x-internal-secret": ""})
        assert response.status_code == 401


class TestBotRoute:
    """Test POST /bot/message."""

    def test_bot_turn(self, client, machine):
        response = client.post(
            "/bot/message",
            json={
                "lineId": "line-1",
                "patientPhone": "+50493133496",
                "messageText": "hola",
                "organizationId": "org-1",
            },
            headers=AUTH,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "¡Hola!"
        assert data["nextState"] == "main_menu"
        assert data["requiresInput"] is True
        assert data["rendered"] == "¡Hola!\n\n1. Agendar cita\n2. FAQs"
        kwargs = machine.handle_message.call_args.kwargs
        assert kwargs["organization_id"] == "org-1"

    def test_missing_fields(self, client):
        response = client.post("/bot/message", json={"lineId": "line-1"}, headers=AUTH)
        assert response.status_code == 422


class TestMessagingRoute:
    """Test POST /messaging/send."""

    def test_send_ok(self, client, gateway):
        response = client.post(
            "/messaging/send",
            json={"to": "+50493133496", "type": "confirmation", "templateParams": {"1": "Ana"}},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {
            "ok": True, "status": "sent", "providerMessageId": "wamid.1", "provider": "meta",
        }
        request = gateway.send.call_args.args[0]
        assert request.template_params == {"1": "Ana"}

    @pytest.mark.parametrize("code,http_status", [
        ("MESSAGING_DISABLED", 403),
        ("TEMPLATE_PENDING_APPROVAL", 503),
        ("VALIDATION_ERROR", 400),
        ("NO_ACTIVE_LINE", 500),
    ])
    def test_send_failures(self, client, gateway, code, http_status):
        gateway.send = AsyncMock(return_value=SendResult(
            ok=False, status="failed", error="nope", error_code=code,
        ))

        response = client.post("/messaging/send", json={"to": "+50493133496"}, headers=AUTH)

        assert response.status_code == http_status
        assert response.json()["errorCode"] == code


class TestSchedulingRoutes:
    """Test /scheduling endpoints."""

    def test_slots(self, client, engine):
        response = client.get(
            "/scheduling/slots",
            params={"doctorId": "doc-1", "date": FUTURE_DAY, "durationMinutes": 60},
            headers=AUTH,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["slots"] == ["08:00", "10:00"]
        assert data["doctorId"] == "doc-1"
        engine.available_slots.assert_awaited_once()

    def test_days(self, client):
        response = client.get(
            "/scheduling/days",
            params={"doctorId": "doc-1", "month": "2099-01", "durationMinutes": 60},
            headers=AUTH,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "America/Tegucigalpa"
        assert data["days"][0] == {"date": "2099-01-01", "dow": 4, "working": True, "canFit": False}

    def test_days_bad_month(self, client):
        response = client.get(
            "/scheduling/days",
            params={"doctorId": "doc-1", "month": "January", "durationMinutes": 60},
            headers=AUTH,
        )

        assert response.status_code == 400
        assert response.json()["errorCode"] == "VALIDATION_ERROR"

    def _create(self, client, **overrides):
        body = {
            "doctorId": "doc-1",
            "patientId": "pat-1",
            "date": FUTURE_DAY,
            "time": "15:00",
            "durationMinutes": 60,
        }
        body.update(overrides)
        return client.post("/scheduling/appointments", json=body, headers=AUTH)

    def test_create_appointment_sends_confirmation(self, client, gateway, booking):
        response = self._create(client)

        assert response.status_code == 200
        data = response.json()
        assert data["appointment"]["id"] == "appt-new"
        assert data["whatsappSent"] is True
        assert data["providerMessageId"] == "wamid.1"
        request = gateway.send.call_args.args[0]
        assert request.type == "confirmation"
        assert request.appointment_id == "appt-new"
        assert request.template_params == {
            "1": "María Pérez",
            "2": "Dra. Ana López",
            "3": "05/01/2099 a las 3:00 PM",
        }

    def test_create_appointment_conflict(self, client, booking, gateway):
        booking.book = AsyncMock(return_value=BookingResult(
            success=False, message="El horario seleccionado ya está ocupado", error_code="SLOT_TAKEN",
        ))

        response = self._create(client)

        assert response.status_code == 409
        assert response.json()["errorCode"] == "SLOT_TAKEN"
        gateway.send.assert_not_called()

    def test_create_appointment_unknown_patient(self, client, scheduling):
        scheduling.get_patient = AsyncMock(return_value=None)

        response = self._create(client)

        assert response.status_code == 404
        assert response.json()["errorCode"] == "NOT_FOUND"

    def test_create_appointment_patient_without_phone(self, client, scheduling, gateway):
        scheduling.get_patient = AsyncMock(return_value=PatientInfo(id="pat-1", name="María"))

        response = self._create(client)

        assert response.status_code == 200
        assert response.json()["whatsappSent"] is False
        assert response.json()["whatsappError"] == "El paciente no tiene número de teléfono"
        gateway.send.assert_not_called()

    def test_create_appointment_invalid_duration(self, client):
        response = self._create(client, durationMinutes=5)
        assert response.status_code == 422


class TestJobsRoute:
    def test_send_reminders(self, client, reminder_job):
        response = client.post("/jobs/send-reminders", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["date"] == "2099-01-06"
        reminder_job.run.assert_awaited_once()


class TestMetaWebhook:
    """Test /webhooks/meta."""

    def test_verification_ok(self, client):
        response = client.get("/webhooks/meta", params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345",
        })

        assert response.status_code == 200
        assert response.text == "12345"

    def test_verification_bad_token(self, client):
        response = client.get("/webhooks/meta", params={
            "hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "12345",
        })
        assert response.status_code == 403

    def test_delivery_signed(self, client, processor):
        body = json.dumps({"object": "whatsapp_business_account", "entry": []}).encode()

        response = client.post(
            "/webhooks/meta",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hub-Signature-256": compute_meta_signature(body, "meta-secret"),
            },
        )

        assert response.status_code == 200
        assert response.text == "OK"
        processor.process_meta.assert_awaited_once()

    def test_delivery_bad_signature(self, client, processor):
        body = b'{"object": "whatsapp_business_account"}'

        response = client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": "sha256=deadbeef"},
        )

        assert response.status_code == 401
        processor.process_meta.assert_not_called()

    def test_delivery_processing_error_still_200(self, client, processor):
        """Our own failures never trigger provider retries."""
        processor.process_meta = AsyncMock(side_effect=RuntimeError("boom"))
        body = b'{"object": "whatsapp_business_account", "entry": []}'

        response = client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": compute_meta_signature(body, "meta-secret")},
        )

        assert response.status_code == 200

    def test_delivery_malformed_json_acknowledged(self, client, processor):
        """Signed but unparseable bodies are logged and acknowledged."""
        body = b"not json"

        response = client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": compute_meta_signature(body, "meta-secret")},
        )

        assert response.status_code == 200
        assert response.text == "OK"
        processor.process_meta.assert_not_called()

    def test_delivery_non_object_json_acknowledged(self, client, processor):
        body = b"[1, 2, 3]"

        response = client.post(
            "/webhooks/meta",
            content=body,
            headers={"X-Hub-Signature-256": compute_meta_signature(body, "meta-secret")},
        )

        assert response.status_code == 200
        processor.process_meta.assert_not_called()


class TestTwilioWebhooks:
    """Test /webhooks/twilio/*."""

    URL = "https://bot.example.com/webhooks/twilio/inbound"

    def test_inbound_signed(self, client, processor):
        form = {"MessageSid": "SM1", "From": "whatsapp:+50493133496", "Body": "Sí"}
        signature = RequestValidator("twilio-token").compute_signature(self.URL, form)

        response = client.post(
            "/webhooks/twilio/inbound", data=form, headers={"X-Twilio-Signature": signature},
        )

        assert response.status_code == 200
        assert "<Response>" in response.text
        processor.process_twilio_inbound.assert_awaited_once()

    def test_inbound_line_token_preferred(self, client, processor):
        processor.resolve_twilio_line = AsyncMock(return_value=LineConfig(
            id="line-1", phone_number="+50422223333", provider="twilio", twilio_auth_token="line-token",
        ))
        form = {"MessageSid": "SM1", "To": "whatsapp:+50422223333", "Body": "Sí"}
        signature = RequestValidator("line-token").compute_signature(self.URL, form)

        response = client.post(
            "/webhooks/twilio/inbound", data=form, headers={"X-Twilio-Signature": signature},
        )

        assert response.status_code == 200

    def test_inbound_bad_signature(self, client, processor):
        response = client.post(
            "/webhooks/twilio/inbound",
            data={"MessageSid": "SM1", "Body": "hola"},
            headers={"X-Twilio-Signature": "bogus"},
        )

        assert response.status_code == 401
        processor.process_twilio_inbound.assert_not_called()

    def test_status_callback(self, client, processor):
        response = client.post(
            "/webhooks/twilio/status?token=status-token",
            data={"MessageSid": "SM1", "MessageStatus": "delivered"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "applied": True}

    def test_status_bad_token(self, client, processor):
        response = client.post(
            "/webhooks/twilio/status?token=wrong",
            data={"MessageSid": "SM1", "MessageStatus": "delivered"},
        )

        assert response.status_code == 401
        processor.process_twilio_status.assert_not_called()

    def test_status_missing_sid(self, client):
        response = client.post(
            "/webhooks/twilio/status?token=status-token",
            data={"MessageStatus": "delivered"},
        )
        assert response.status_code == 400


class TestHealth:
    """Test health probes."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_degraded_without_redis(self, client):
        with patch("clinicbot.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
                patch("clinicbot.api.routes.health.check_redis_health", AsyncMock(return_value=False)):
            response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_not_ready_without_database(self, client):
        with patch("clinicbot.api.routes.health.check_db_health", AsyncMock(return_value=False)), \
                patch("clinicbot.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
