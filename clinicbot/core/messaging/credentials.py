"""
Provider credentials.

Two tiers: values stored on the WhatsApp line win, environment defaults
fill the gaps. The resolver is built from Settings and passed to the
provider factory explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from clinicbot.config import Settings
from clinicbot.core.exceptions import ProviderConfigError
from clinicbot.core.messaging.phone import to_twilio_format
from clinicbot.core.messaging.types import LineConfig


@dataclass(frozen=True)
class ProviderDefaults:
    """Environment-level fallbacks."""

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_whatsapp_from: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None
    twilio_templates: Optional[dict[str, str]] = None
    meta_graph_base_url: str = "https://graph.facebook.com"
    meta_graph_api_version: str = "v21.0"
    twilio_api_base_url: str = "https://api.twilio.com"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderDefaults":
        templates = {
            "confirmation": settings.twilio_template_confirmation,
            "reminder_24h": settings.twilio_template_reminder_24h,
            "reschedule_doctor": settings.twilio_template_reschedule_secretary,
        }
        return cls(
            twilio_account_sid=settings.twilio_account_sid,
            twilio_auth_token=settings.twilio_auth_token,
            twilio_whatsapp_from=settings.twilio_whatsapp_from,
            twilio_messaging_service_sid=settings.twilio_messaging_service_sid,
            twilio_templates={k: v for k, v in templates.items() if v},
            meta_graph_base_url=settings.meta_graph_base_url,
            meta_graph_api_version=settings.meta_graph_api_version,
            twilio_api_base_url=settings.twilio_api_base_url,
        )


@dataclass(frozen=True)
class MetaCredentials:
    phone_number_id: str
    access_token: str
    base_url: str
    api_version: str


@dataclass(frozen=True)
class TwilioCredentials:
    account_sid: str
    auth_token: str
    from_: str  # whatsapp:+504XXXXXXXX
    base_url: str
    messaging_service_sid: Optional[str] = None


class CredentialResolver:
    """Resolves adapter credentials for a line."""

    def __init__(self, defaults: ProviderDefaults):
        self.defaults = defaults

    def meta(self, line: LineConfig) -> MetaCredentials:
        """
        Raises:
            ProviderConfigError: If the line lacks a phone number id or token
        """
        if not line.meta_phone_number_id or not line.meta_access_token:
            raise ProviderConfigError(f"Meta config incomplete on line {line.id}")
        return MetaCredentials(
            phone_number_id=line.meta_phone_number_id,
            access_token=line.meta_access_token,
            base_url=self.defaults.meta_graph_base_url,
            api_version=self.defaults.meta_graph_api_version,
        )

    def twilio(self, line: LineConfig) -> TwilioCredentials:
        """
        Raises:
            ProviderConfigError: If account sid, token or sender is missing in both tiers
        """
        account_sid = line.twilio_account_sid or self.defaults.twilio_account_sid
        auth_token = line.twilio_auth_token or self.defaults.twilio_auth_token
        sender = line.twilio_phone_from or self.defaults.twilio_whatsapp_from
        if not account_sid or not auth_token or not sender:
            raise ProviderConfigError(f"Twilio config incomplete on line {line.id}")

        if not sender.lower().startswith("whatsapp:"):
            sender = to_twilio_format(sender)

        return TwilioCredentials(
            account_sid=account_sid,
            auth_token=auth_token,
            from_=sender,
            base_url=self.defaults.twilio_api_base_url,
            messaging_service_sid=(
                line.twilio_messaging_service_sid or self.defaults.twilio_messaging_service_sid
            ),
        )

    def twilio_template(self, message_type: str) -> Optional[str]:
        """Environment Content SID for a logical type, if configured."""
        return (self.defaults.twilio_templates or {}).get(message_type)
