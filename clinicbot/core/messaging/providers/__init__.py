"""
Provider adapters for WhatsApp delivery.

Each adapter turns a resolved ProviderRequest into one HTTP call and
maps the response back into a ProviderResult.
"""

from clinicbot.core.messaging.providers.meta import MetaProvider
from clinicbot.core.messaging.providers.twilio import TwilioProvider
from clinicbot.core.messaging.providers.factory import create_provider

__all__ = [
    "MetaProvider",
    "TwilioProvider",
    "create_provider",
]
