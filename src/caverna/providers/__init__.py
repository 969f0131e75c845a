"""External rendering providers.

Importing this package registers the built-in providers with
:data:`provider_registry`.
"""

from .base import ProviderBase, ProviderRegistry, ProviderResult, provider_registry
from .diffusion import DiffusionProvider
from .mock import MockProvider

__all__ = [
    "DiffusionProvider",
    "MockProvider",
    "ProviderBase",
    "ProviderRegistry",
    "ProviderResult",
    "provider_registry",
]
