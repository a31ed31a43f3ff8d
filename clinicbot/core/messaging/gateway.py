"""
Messaging Gateway

Single entry point for every outbound WhatsApp message. Resolves the
line, honours the organization kill switch, picks the provider adapter,
resolves the template and writes one message log row per attempt.

Usage:
    gateway = get_messaging_gateway()
    result = await gateway.send(SendRequest(
        to="+50499999999",
        type="confirmation",
        template_params={"1": "Ana", "2": "Dr. Pérez", "3": "14/10/2025 a las 3:00 PM"},
        appointment_id=appointment_id,
        organization_id=org_id,
    ))
"""

import logging
from typing import Callable, Optional

import httpx

from clinicbot.config import get_settings
from clinicbot.core.exceptions import ProviderConfigError
from clinicbot.core.messaging.credentials import CredentialResolver, ProviderDefaults
from clinicbot.core.messaging.phone import mask_phone, normalize_to_e164
from clinicbot.core.messaging.providers.factory import create_provider
from clinicbot.core.messaging.repository import MessagingRepository, get_messaging_repository
from clinicbot.core.messaging.types import (
    QUICK_REPLY_TYPES,
    ErrorCode,
    LineConfig,
    MessageLogEntry,
    MessageType,
    MessagingProvider,
    ProviderName,
    ProviderRequest,
    ProviderResult,
    SendRequest,
    SendResult,
)

logger = logging.getLogger(__name__)


class MessagingGateway:
    """
    Provider-agnostic send.

    send() never raises: every failure comes back as SendResult(ok=False)
    with an error code.
    """

    def __init__(
        self,
        repository: Optional[MessagingRepository] = None,
        resolver: Optional[CredentialResolver] = None,
        client: Optional[httpx.AsyncClient] = None,
        provider_factory: Callable[..., MessagingProvider] = create_provider,
    ):
        self._repository = repository
        self._resolver = resolver
        self._client = client
        self._provider_factory = provider_factory

    def _get_repository(self) -> MessagingRepository:
        if self._repository is None:
            self._repository = get_messaging_repository()
        return self._repository

    def _get_resolver(self) -> CredentialResolver:
        if self._resolver is None:
            self._resolver = CredentialResolver(ProviderDefaults.from_settings(get_settings()))
        return self._resolver

    async def send(self, request: SendRequest) -> SendResult:
        try:
            return await self._send(request)
        except Exception as e:
            logger.error(f"Gateway send failed: {e}", exc_info=True)
            return SendResult(ok=False, status="failed", error=str(e), error_code=ErrorCode.INTERNAL_ERROR)

    async def _send(self, request: SendRequest) -> SendResult:
        repository = self._get_repository()

        to = normalize_to_e164(request.to)
        if not to:
            return SendResult(
                ok=False,
                status="failed",
                error="Destination phone is required",
                error_code=ErrorCode.VALIDATION_ERROR,
            )

        # === Line ===
        if request.line_id:
            line = await repository.get_line(request.line_id)
        else:
            line = await repository.get_active_line(request.organization_id)
        if line is None:
            logger.warning(f"No active line for org={request.organization_id}")
            return SendResult(
                ok=False,
                status="failed",
                error="No active WhatsApp line",
                error_code=ErrorCode.NO_ACTIVE_LINE,
            )

        organization_id = request.organization_id or line.organization_id

        # === Kill switch ===
        if not await repository.is_messaging_enabled(organization_id):
            logger.info(f"Messaging disabled for org={organization_id}, blocked {request.type}")
            await self._log(
                request, line, to, organization_id,
                status="failed",
                body=request.body or f"template:{request.type}",
                error_code=ErrorCode.MESSAGING_DISABLED,
                error_message="Messaging disabled for organization",
                raw_payload={"blocked": True, "reason": ErrorCode.MESSAGING_DISABLED},
            )
            return SendResult(
                ok=False,
                status="failed",
                provider=line.provider,
                error="Messaging disabled for organization",
                error_code=ErrorCode.MESSAGING_DISABLED,
            )

        # === Provider ===
        try:
            provider = self._provider_factory(line, self._get_resolver(), self._client)
        except ProviderConfigError as e:
            logger.error(f"Provider not configured for line {line.id}: {e.message}")
            await self._log(
                request, line, to, organization_id,
                status="failed",
                body=request.body or f"template:{request.type}",
                error_code=ErrorCode.PROVIDER_NOT_CONFIGURED,
                error_message=e.message,
            )
            return SendResult(
                ok=False,
                status="failed",
                provider=line.provider,
                error=e.message,
                error_code=ErrorCode.PROVIDER_NOT_CONFIGURED,
            )

        # === Template ===
        template_name, template_language = await self._resolve_template(request, line, provider.name)

        if not template_name and not request.body:
            pending = await repository.has_pending_template(line.id, request.type, provider.name)
            error_code = ErrorCode.TEMPLATE_PENDING_APPROVAL if pending else ErrorCode.VALIDATION_ERROR
            error = (
                f"Template for {request.type} is pending approval"
                if pending
                else f"No template or body for {request.type}"
            )
            logger.warning(f"Cannot send {request.type} on line {line.id}: {error_code}")
            await self._log(
                request, line, to, organization_id,
                status="failed",
                body=f"template:{request.type}",
                error_code=error_code,
                error_message=error,
            )
            return SendResult(
                ok=False,
                status="failed",
                provider=provider.name,
                error=error,
                error_code=error_code,
            )

        button_payloads = None
        if (
            template_name
            and provider.name == ProviderName.META.value
            and request.type in QUICK_REPLY_TYPES
            and request.appointment_id
        ):
            button_payloads = [request.appointment_id, request.appointment_id]

        provider_request = ProviderRequest(
            to=to,
            kind="template" if template_name else "text",
            template_name=template_name,
            template_language=template_language,
            template_params=request.template_params,
            button_payloads=button_payloads,
            body=None if template_name else request.body,
        )

        # === Send ===
        result: ProviderResult = await provider.send_message(provider_request)

        if result.ok:
            logger.info(
                f"Sent {request.type} via {provider.name} to {mask_phone(to)}: {result.provider_message_id}"
            )
        else:
            logger.warning(
                f"Send {request.type} via {provider.name} failed: {result.error_code} {result.error}"
            )

        await self._log(
            request, line, to, organization_id,
            status="sent" if result.ok else "failed",
            body=provider_request.body or f"template:{template_name}",
            template_name=template_name,
            provider=provider.name,
            provider_message_id=result.provider_message_id,
            error_code=None if result.ok else result.error_code,
            error_message=None if result.ok else result.error,
            raw_payload=result.raw or None,
        )

        return SendResult(
            ok=result.ok,
            status=result.status,
            provider_message_id=result.provider_message_id,
            provider=provider.name,
            error=result.error,
            error_code=result.error_code,
            twilio_sid=(
                result.provider_message_id if provider.name == ProviderName.TWILIO.value else None
            ),
        )

    async def _resolve_template(
        self,
        request: SendRequest,
        line: LineConfig,
        provider_name: str,
    ) -> tuple[Optional[str], str]:
        """Explicit name, then line mapping, then Twilio environment SIDs."""
        if request.template_name:
            return request.template_name, "es"
        # Free-text replies never pick up a mapped template
        if request.type == MessageType.GENERIC.value:
            return None, "es"

        mapping = await self._get_repository().get_template_mapping(
            line.id, request.type, provider_name
        )
        if mapping:
            return mapping.template_name, mapping.template_language

        if provider_name == ProviderName.TWILIO.value:
            sid = self._get_resolver().twilio_template(request.type)
            if sid:
                return sid, "es"

        return None, "es"

    async def _log(
        self,
        request: SendRequest,
        line: LineConfig,
        to: str,
        organization_id: Optional[str],
        status: str,
        body: Optional[str],
        template_name: Optional[str] = None,
        provider: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        raw_payload: Optional[dict] = None,
    ) -> None:
        try:
            await self._get_repository().log_message(MessageLogEntry(
                direction="outbound",
                status=status,
                to_phone=to,
                from_phone=line.phone_number,
                body=body,
                template_name=template_name,
                type=request.type,
                provider=provider or line.provider,
                provider_message_id=provider_message_id,
                error_code=error_code,
                error_message=error_message,
                appointment_id=request.appointment_id,
                patient_id=request.patient_id,
                doctor_id=request.doctor_id,
                organization_id=organization_id,
                line_id=line.id,
                raw_payload=raw_payload,
            ))
        except Exception as e:
            logger.error(f"Failed to log outbound message: {e}", exc_info=True)


# Singleton
_gateway: Optional[MessagingGateway] = None


def get_messaging_gateway() -> MessagingGateway:
    """Get or create the messaging gateway singleton."""
    global _gateway
    if _gateway is None:
        _gateway = MessagingGateway()
    return _gateway
