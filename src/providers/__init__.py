"""Resource providers and the provider registry."""

from typing import Optional

from config import ConfigError, Settings
from providers.base import Provider, check_attributes
from providers.http import HttpProvider
from providers.memory import InMemoryProvider

PROVIDERS = {
    'memory': 'Simulated in-process provider (no external calls)',
    'http': 'Remote materialization service (POST {endpoint}/materialize)',
}


def list_providers() -> list[str]:
    return sorted(PROVIDERS)


def get_provider(name: str, settings: Optional[Settings] = None) -> Provider:
    """Build a provider by registry name.

    Raises:
        ConfigError: If the name is unknown or required settings are missing
    """
    settings = settings or Settings()
    if name == 'memory':
        return InMemoryProvider()
    if name == 'http':
        if not settings.provider_endpoint:
            raise ConfigError("http provider requires provider_endpoint (settings or --endpoint)")
        return HttpProvider(
            endpoint=settings.provider_endpoint,
            token=settings.provider_token or None,
            timeout=settings.provider_timeout,
            verify=settings.verify_tls,
        )
    raise ConfigError(f"Unknown provider '{name}'. Available: {', '.join(list_providers())}")


__all__ = [
    'Provider',
    'HttpProvider',
    'InMemoryProvider',
    'PROVIDERS',
    'check_attributes',
    'get_provider',
    'list_providers',
]
