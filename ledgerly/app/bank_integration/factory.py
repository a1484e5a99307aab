"""
Provider factory

Maps provider names to configured provider instances. Routes get a factory
through FastAPI dependencies so tests can swap in stubbed transports or fake
providers.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Dict, List, Optional

import httpx
from fastapi import Depends

from ledgerly.config import Settings, get_settings
from .errors import UnsupportedProviderError
from .providers.base import BaseBankProvider
from .providers.sibs import SibsProvider
from .providers.truelayer import TrueLayerProvider
from .session_store import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {
    'truelayer': 'TrueLayer',
    'sibs': 'SIBS API Market',
}


class ProviderFactory:
    """Creates (and caches) provider instances configured from settings."""

    def __init__(
        self,
        settings: Settings,
        session_store: SessionStore,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings
        self.session_store = session_store
        self.transport = transport
        self._provider_cache: Dict[str, BaseBankProvider] = {}

    def get_banking_provider(self, provider_name: str) -> BaseBankProvider:
        """
        Get provider instance by name (case-insensitive).

        Raises:
            UnsupportedProviderError: If no provider has that name
        """
        name = (provider_name or '').lower()
        if name in self._provider_cache:
            return self._provider_cache[name]

        common = {
            'session_store': self.session_store,
            'timeout': self.settings.provider_timeout_seconds,
            'transport': self.transport,
        }

        if name == 'truelayer':
            provider = TrueLayerProvider(
                client_id=self.settings.truelayer_client_id,
                client_secret=self.settings.truelayer_client_secret,
                redirect_uri=self.settings.truelayer_redirect_uri,
                is_sandbox=self.settings.is_sandbox,
                **common
            )
        elif name == 'sibs':
            provider = SibsProvider(
                client_id=self.settings.sibs_client_id,
                client_secret=self.settings.sibs_client_secret,
                redirect_uri=self.settings.sibs_redirect_uri,
                certificate_path=self.settings.sibs_certificate_path,
                private_key_path=self.settings.sibs_private_key_path,
                is_sandbox=self.settings.is_sandbox,
                **common
            )
        else:
            raise UnsupportedProviderError(f"Unsupported banking provider: {provider_name}")

        self._provider_cache[name] = provider
        return provider

    def list_providers(self) -> List[Dict[str, str]]:
        return [{'id': key, 'name': name} for key, name in SUPPORTED_PROVIDERS.items()]


@lru_cache()
def get_session_store() -> SessionStore:
    settings = get_settings()
    return InMemorySessionStore(ttl=timedelta(minutes=settings.banking_session_ttl_minutes))


def get_provider_factory(
    session_store: SessionStore = Depends(get_session_store)
) -> ProviderFactory:
    return ProviderFactory(get_settings(), session_store)
