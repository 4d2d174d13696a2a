"""PPUK Providers — external property data APIs behind a TTL response cache."""

from ppuk.providers.cache import ResponseCache, normalize_key  # noqa: F401
from ppuk.providers.client import CircuitBreaker, ProviderClient, ProviderGateway  # noqa: F401

__all__ = [
    "ResponseCache",
    "normalize_key",
    "CircuitBreaker",
    "ProviderClient",
    "ProviderGateway",
]
