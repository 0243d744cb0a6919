"""Base classes and registry for image-generation providers.

A provider is the external capability "transform this image with this prompt,
or fail".  Each backend (Gemini today) implements :class:`ImageProvider` and
reports failures as :class:`~photoforge.core.errors.ProviderError` with one
of five kinds:

- **auth** – missing or rejected API key
- **quota** – the provider's own rate or billing limit
- **safety** – content blocked by the provider's safety filters
- **transient** – connectivity, TLS, timeouts, upstream 5xx
- **malformed** – the provider answered but without a usable image

Providers are registered by name and instantiated from configuration, so the
orchestrator receives a ready instance and tests can substitute a fake.

Usage Example
-------------
::

    from photoforge.core.providers import provider_registry

    provider = provider_registry.create_configured(config)
    if provider is not None:
        result = provider.generate(prompt, image_bytes, width=1024, height=1024)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from photoforge.core.config import PhotoforgeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResult:
    """Successful provider response.

    Attributes:
        image_bytes: Encoded output image
        mime_type: MIME type of ``image_bytes``
        image_url: Remote URL when the provider hosts the output itself
        text: Any text the provider returned alongside the image
    """

    image_bytes: bytes
    mime_type: str = "image/png"
    image_url: str | None = None
    text: str | None = None


class ImageProvider(ABC):
    """Abstract base class for image-to-image providers.

    Implementations must be safe to call from a worker thread; the
    orchestrator runs :meth:`generate` off the event loop and bounds it with a
    timeout.
    """

    name: str = "Base Provider"
    description: str = "Base class for image providers"
    version: str = "0.1.0"

    def __init__(self, config: PhotoforgeConfig) -> None:
        self.config = config
        logger.info(f"Initialized {self.name} provider")

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the provider is configured well enough to accept calls."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        image_bytes: bytes | None,
        *,
        width: int,
        height: int,
        mime_type: str = "image/jpeg",
    ) -> ProviderResult:
        """Transform *image_bytes* according to *prompt*.

        Raises
        ------
        ProviderError
            Classified provider failure
        """

    def get_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_available": self.is_available,
        }


class ProviderRegistry:
    """Registry for available provider classes."""

    def __init__(self) -> None:
        self._providers: dict[str, type[ImageProvider]] = {}

    def register(self, provider_class: type[ImageProvider]) -> type[ImageProvider]:
        """Register a provider class; usable as a class decorator."""
        provider_name = provider_class.name

        if provider_name in self._providers:
            logger.warning(f"Provider '{provider_name}' is already registered, overwriting")

        self._providers[provider_name] = provider_class
        logger.debug(f"Registered provider: {provider_name}")
        return provider_class

    def instantiate(self, provider_name: str, config: PhotoforgeConfig) -> ImageProvider:
        """Create an instance of a registered provider.

        Raises
        ------
        KeyError
            If provider_name is not registered
        """
        if provider_name not in self._providers:
            available = ", ".join(self.list_available())
            raise KeyError(
                f"Provider '{provider_name}' not found. Available providers: {available}"
            )
        return self._providers[provider_name](config)

    def create_configured(self, config: PhotoforgeConfig) -> ImageProvider | None:
        """Instantiate ``config.provider_name`` if it is usable.

        Returns:
            The provider, or ``None`` when it is unknown or not configured
            (for example, no API key)
        """
        try:
            provider = self.instantiate(config.provider_name, config)
        except KeyError as e:
            logger.error(str(e))
            return None

        if not provider.is_available:
            logger.warning(f"Provider '{config.provider_name}' is not configured")
            return None
        return provider

    def get_provider_class(self, provider_name: str) -> type[ImageProvider] | None:
        return self._providers.get(provider_name)

    def list_available(self) -> list[str]:
        return list(self._providers.keys())


# Global provider registry instance
provider_registry = ProviderRegistry()
