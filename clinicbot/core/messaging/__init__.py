"""
Messaging Module

Provider-agnostic outbound WhatsApp delivery (Meta Cloud API, Twilio).

Usage:
    from clinicbot.core.messaging import SendRequest, get_messaging_gateway

    result = await get_messaging_gateway().send(
        SendRequest(to="+50499999999", body="Hola")
    )
"""

from clinicbot.core.messaging.types import (
    ErrorCode,
    LineConfig,
    MessageType,
    ProviderName,
    ProviderRequest,
    ProviderResult,
    QUICK_REPLY_TYPES,
    STATUS_RANK,
    SendRequest,
    SendResult,
    status_rank,
)

from clinicbot.core.messaging.phone import (
    mask_phone,
    normalize_to_e164,
    to_local,
    to_meta_format,
    to_twilio_format,
)

from clinicbot.core.messaging.credentials import (
    CredentialResolver,
    ProviderDefaults,
)

from clinicbot.core.messaging.repository import (
    MessagingRepository,
    get_messaging_repository,
)

from clinicbot.core.messaging.gateway import (
    MessagingGateway,
    get_messaging_gateway,
)

__all__ = [
    # Types
    "ErrorCode",
    "LineConfig",
    "MessageType",
    "ProviderName",
    "ProviderRequest",
    "ProviderResult",
    "QUICK_REPLY_TYPES",
    "STATUS_RANK",
    "SendRequest",
    "SendResult",
    "status_rank",
    # Phone
    "mask_phone",
    "normalize_to_e164",
    "to_local",
    "to_meta_format",
    "to_twilio_format",
    # Credentials
    "CredentialResolver",
    "ProviderDefaults",
    # Repository
    "MessagingRepository",
    "get_messaging_repository",
    # Gateway
    "MessagingGateway",
    "get_messaging_gateway",
]
