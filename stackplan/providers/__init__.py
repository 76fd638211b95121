"""Provider boundary and the simulated in-memory provider."""

from stackplan.providers.base import ResourceProvider
from stackplan.providers.memory import InMemoryProvider, ProviderCall

__all__ = [
    "InMemoryProvider",
    "ProviderCall",
    "ResourceProvider",
]
