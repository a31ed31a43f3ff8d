"""
Twilio adapter for WhatsApp messaging.

Form-encoded POST to the Messages resource with HTTP Basic auth.
Templates are Twilio Content SIDs with JSON-encoded variables.
"""

import json
import logging
from typing import Optional

import httpx

from clinicbot.core.messaging.credentials import TwilioCredentials
from clinicbot.core.messaging.phone import mask_phone, to_twilio_format
from clinicbot.core.messaging.types import (
    ErrorCode,
    ProviderName,
    ProviderRequest,
    ProviderResult,
)
from clinicbot.infra.http import get_http_client

logger = logging.getLogger(__name__)


class TwilioProvider:
    """Adapter for the Twilio Messages API."""

    name = ProviderName.TWILIO.value

    def __init__(self, credentials: TwilioCredentials, client: Optional[httpx.AsyncClient] = None):
        self.credentials = credentials
        self._client = client

    @property
    def url(self) -> str:
        base = self.credentials.base_url.rstrip("/")
        return f"{base}/2010-04-01/Accounts/{self.credentials.account_sid}/Messages.json"

    def build_form(self, request: ProviderRequest) -> dict[str, str]:
        form = {
            "To": to_twilio_format(request.to),
            "From": self.credentials.from_,
        }
        if self.credentials.messaging_service_sid:
            form["MessagingServiceSid"] = self.credentials.messaging_service_sid

        if request.kind == "template" and request.template_name:
            form["ContentSid"] = request.template_name
            if request.template_params:
                form["ContentVariables"] = json.dumps(request.template_params)
        elif request.body:
            form["Body"] = request.body
        return form

    async def send_message(self, request: ProviderRequest) -> ProviderResult:
        """Send one message. Transport failures come back as NETWORK_ERROR."""
        client = self._client or get_http_client()

        logger.info(f"Twilio send to {mask_phone(request.to)} kind={request.kind}")

        try:
            response = await client.post(
                self.url,
                data=self.build_form(request),
                auth=(self.credentials.account_sid, self.credentials.auth_token),
            )
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed: {e}")
            return ProviderResult(
                ok=False,
                provider=self.name,
                error=str(e) or "Network error",
                error_code=ErrorCode.NETWORK_ERROR,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_success:
            return ProviderResult(
                ok=True,
                provider=self.name,
                status="sent",
                provider_message_id=data.get("sid"),
                raw=data,
            )

        code = data.get("error_code") or data.get("code")
        logger.warning(f"Twilio send rejected: status={response.status_code} code={code}")
        return ProviderResult(
            ok=False,
            provider=self.name,
            error=data.get("error_message") or data.get("message") or "Twilio API error",
            error_code=str(code) if code is not None else None,
            raw=data,
        )
