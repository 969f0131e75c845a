"""Base class and registry for external rendering providers.

A provider turns a positive/negative prompt pair into image bytes.  The
orchestrator treats it as an opaque, possibly slow capability: it wraps every
call in a timeout, retries retryable failures with backoff, and fails over
to the next configured provider when one is exhausted.

Provider Contract
-----------------
``render(positive_prompt, negative_prompt) -> ProviderResult``

- On success: ``success=True`` and ``artifact_bytes`` set.
- On failure: ``success=False`` and ``error`` set, with ``retryable`` and an
  optional ``retry_after`` hint.  Providers may also raise; any exception is
  treated as a retryable failure.

Providers must not write job records.  They return data and the
orchestrator applies it.

Usage Example
-------------
    >>> from caverna.providers import provider_registry
    >>> from caverna.core.config import config
    >>>
    >>> provider_registry.list_available()
    ['mock', 'diffusion']
    >>> provider = provider_registry.instantiate("mock", config)
    >>> result = provider.render("a wolf in a cave", "extra fingers")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from caverna.core.config import CavernaConfig

logger = logging.getLogger(__name__)


@dataclass
class ProviderResult:
    """What a provider returns for one render call."""

    success: bool
    artifact_bytes: bytes | None = None
    error: str | None = None
    retryable: bool = True
    retry_after: float | None = None
    content_type: str = "image/png"

    @classmethod
    def ok(cls, artifact_bytes: bytes, content_type: str = "image/png") -> ProviderResult:
        return cls(success=True, artifact_bytes=artifact_bytes, content_type=content_type)

    @classmethod
    def failed(
        cls, error: str, *, retryable: bool = True, retry_after: float | None = None
    ) -> ProviderResult:
        return cls(success=False, error=error, retryable=retryable, retry_after=retry_after)


class ProviderBase(ABC):
    """Abstract base class for rendering providers.

    Attributes
    ----------
    name : str
        Registry key, also recorded as ``service_used`` on completed jobs
    description : str
        Brief description of the provider
    config : CavernaConfig
        Application configuration
    """

    name: str = "base"
    description: str = "Base class for rendering providers"

    def __init__(self, config: CavernaConfig) -> None:
        self.config = config
        logger.info(f"Initialized {self.name} provider")

    @abstractmethod
    def render(self, positive_prompt: str, negative_prompt: str) -> ProviderResult:
        """Render one image.

        May block for tens of seconds.  Called from the dispatch pool, never
        from a request thread.
        """

    def close(self) -> None:
        """Release any resources held by the provider."""

    def get_info(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description}


class ProviderRegistry:
    """Registry of available provider classes, keyed by name."""

    def __init__(self) -> None:
        self._providers: dict[str, type[ProviderBase]] = {}

    def register(self, provider_class: type[ProviderBase]) -> type[ProviderBase]:
        """Register *provider_class*.  Usable as a class decorator."""
        provider_name = provider_class.name

        if provider_name in self._providers:
            logger.warning(f"Provider '{provider_name}' is already registered, overwriting")

        self._providers[provider_name] = provider_class
        logger.debug(f"Registered provider: {provider_name}")
        return provider_class

    def instantiate(self, provider_name: str, config: CavernaConfig) -> ProviderBase:
        """Create an instance of a registered provider.

        Raises
        ------
        KeyError
            If provider_name is not registered
        """
        if provider_name not in self._providers:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider '{provider_name}' not found. Available providers: {available}")

        return self._providers[provider_name](config)

    def get_provider_class(self, provider_name: str) -> type[ProviderBase] | None:
        return self._providers.get(provider_name)

    def list_available(self) -> list[str]:
        return list(self._providers.keys())


# Global provider registry
provider_registry = ProviderRegistry()
