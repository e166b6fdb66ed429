"""Pinworks - Multi-tenant bulk Pinterest pin generation."""

__version__ = "0.1.0"

from pinworks.core.config import PinworksConfig, config
from pinworks.core.providers import ProviderAdapterBase, provider_registry

__all__ = [
    "ProviderAdapterBase",
    "provider_registry",
    "PinworksConfig",
    "config",
]
