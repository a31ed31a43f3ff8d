"""
Provider factory.

Picks the adapter for a line's provider and resolves its credentials.
New providers register a builder in PROVIDER_BUILDERS.
"""

from typing import Callable, Optional

import httpx

from clinicbot.core.exceptions import ProviderConfigError
from clinicbot.core.messaging.credentials import CredentialResolver
from clinicbot.core.messaging.providers.meta import MetaProvider
from clinicbot.core.messaging.providers.twilio import TwilioProvider
from clinicbot.core.messaging.types import LineConfig, MessagingProvider, ProviderName


def _build_meta(line: LineConfig, resolver: CredentialResolver, client) -> MetaProvider:
    return MetaProvider(resolver.meta(line), client=client)


def _build_twilio(line: LineConfig, resolver: CredentialResolver, client) -> TwilioProvider:
    return TwilioProvider(resolver.twilio(line), client=client)


PROVIDER_BUILDERS: dict[str, Callable[..., MessagingProvider]] = {
    ProviderName.META.value: _build_meta,
    ProviderName.TWILIO.value: _build_twilio,
}


def create_provider(
    line: LineConfig,
    resolver: CredentialResolver,
    client: Optional[httpx.AsyncClient] = None,
) -> MessagingProvider:
    """Build the adapter for a line.

    Raises:
        ProviderConfigError: Unknown provider or incomplete credentials
    """
    builder = PROVIDER_BUILDERS.get((line.provider or "").lower())
    if builder is None:
        raise ProviderConfigError(f"Unknown provider: {line.provider}")
    return builder(line, resolver, client)
