"""Provider adapters for the external generation services.

Importing this package registers every built-in adapter with
:data:`provider_registry`.
"""

# Import adapters to ensure they're registered
from pinworks.core.providers.ark import ArkAdapter
from pinworks.core.providers.base import (
    ProviderAdapterBase,
    ProviderPool,
    ProviderRegistry,
    ProviderResult,
    provider_registry,
)
from pinworks.core.providers.deepseek import DeepSeekAdapter
from pinworks.core.providers.fal import FalAdapter
from pinworks.core.providers.openai import OpenAIAdapter

__all__ = [
    "ArkAdapter",
    "DeepSeekAdapter",
    "FalAdapter",
    "OpenAIAdapter",
    "ProviderAdapterBase",
    "ProviderPool",
    "ProviderRegistry",
    "ProviderResult",
    "provider_registry",
]
