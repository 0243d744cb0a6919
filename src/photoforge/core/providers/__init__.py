"""Image-generation providers.

Importing this package registers the bundled providers with
:data:`provider_registry`.
"""

from photoforge.core.providers.base import (
    ImageProvider,
    ProviderRegistry,
    ProviderResult,
    provider_registry,
)
from photoforge.core.providers.gemini import GeminiProvider, classify_exception
from photoforge.core.providers.placeholder import synthesize_placeholder

__all__ = [
    "GeminiProvider",
    "ImageProvider",
    "ProviderRegistry",
    "ProviderResult",
    "classify_exception",
    "provider_registry",
    "synthesize_placeholder",
]
