"""Provider registration and the external provisioning boundary."""
from __future__ import annotations

from .registry import (
    ConfiguratorRegistration,
    ProviderRegistration,
    ProviderRegistry,
    ProviderSchema,
    Provisioner,
    Runner,
)

__all__ = [
    "ConfiguratorRegistration",
    "ProviderRegistration",
    "ProviderRegistry",
    "ProviderSchema",
    "Provisioner",
    "Runner",
]
