"""Driver contracts, the driver registry and built-in driver kinds."""

from provisioner.drivers.base import (
    Capability,
    Driver,
    InventoryCapable,
    MetricsCapable,
    PollResult,
    Provider,
    ProviderType,
    Provisioner,
    WebhookCapable,
    WebhookResult,
)
from provisioner.drivers.registry import DriverRegistry, DriverSpec, default_factories

__all__ = [
    "Capability",
    "Driver",
    "DriverRegistry",
    "DriverSpec",
    "InventoryCapable",
    "MetricsCapable",
    "PollResult",
    "Provider",
    "ProviderType",
    "Provisioner",
    "WebhookCapable",
    "WebhookResult",
    "default_factories",
]
