"""
Meta Cloud API (WhatsApp Business Platform) adapter.

Sends through POST {graph}/{version}/{phone_number_id}/messages with a
Bearer token.
"""

import logging
from typing import Optional

import httpx

from clinicbot.core.messaging.credentials import MetaCredentials
from clinicbot.core.messaging.phone import mask_phone, to_meta_format
from clinicbot.core.messaging.types import (
    ErrorCode,
    ProviderName,
    ProviderRequest,
    ProviderResult,
)
from clinicbot.infra.http import get_http_client

logger = logging.getLogger(__name__)


class MetaProvider:
    """Adapter for the Meta Graph API."""

    name = ProviderName.META.value

    def __init__(self, credentials: MetaCredentials, client: Optional[httpx.AsyncClient] = None):
        self.credentials = credentials
        self._client = client

    @property
    def url(self) -> str:
        base = self.credentials.base_url.rstrip("/")
        return f"{base}/{self.credentials.api_version}/{self.credentials.phone_number_id}/messages"

    def build_payload(self, request: ProviderRequest) -> dict:
        """Build the JSON body for a template or free-text send."""
        if request.kind == "template" and request.template_name:
            return self._template_payload(request)
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_meta_format(request.to),
            "type": "text",
            "text": {"body": request.body or ""},
        }

    def _template_payload(self, request: ProviderRequest) -> dict:
        components: list[dict] = []

        if request.template_params:
            # Positional parameters ordered by numeric key: "1", "2", "10"
            keys = sorted(request.template_params, key=lambda k: int(k) if k.isdigit() else 0)
            components.append({
                "type": "body",
                "parameters": [
                    {"type": "text", "text": str(request.template_params[k])} for k in keys
                ],
            })

        for index, payload in enumerate(request.button_payloads or []):
            components.append({
                "type": "button",
                "sub_type": "quick_reply",
                "index": str(index),
                "parameters": [{"type": "payload", "payload": payload}],
            })

        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_meta_format(request.to),
            "type": "template",
            "template": {
                "name": request.template_name,
                "language": {"code": request.template_language or "es"},
                "components": components,
            },
        }

    async def send_message(self, request: ProviderRequest) -> ProviderResult:
        """Send one message. Transport failures come back as NETWORK_ERROR."""
        client = self._client or get_http_client()
        payload = self.build_payload(request)

        logger.info(f"Meta send to {mask_phone(request.to)} kind={request.kind}")

        try:
            response = await client.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self.credentials.access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Meta request failed: {e}")
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

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if response.is_success and message_id:
            return ProviderResult(
                ok=True,
                provider=self.name,
                status="sent",
                provider_message_id=message_id,
                raw=data,
            )

        error = data.get("error") or {}
        code = error.get("code")
        logger.warning(f"Meta send rejected: status={response.status_code} code={code}")
        return ProviderResult(
            ok=False,
            provider=self.name,
            error=error.get("message") or "Unknown Meta API error",
            error_code=str(code) if code is not None else None,
            raw=data,
        )
