"""
Driver capability contracts.

A driver is any object satisfying :class:`Provider` plus the mandatory
:class:`Provisioner` lifecycle. Optional capabilities are separate protocols;
whether a driver has one is answered by its declared ``capabilities`` set (see
``DriverRegistry.supports``), never by probing for attributes at call time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Mapping, Protocol, runtime_checkable

from pydantic import SecretStr

from provisioner.domain.models import Resource, ResourceSpec

PollStatus = Literal["pending", "completed", "failed"]


class Capability(StrEnum):
    PROVISIONER = "provisioner"
    METRICS = "metrics"
    INVENTORY = "inventory"
    WEBHOOKS = "webhooks"


class ProviderType(StrEnum):
    PANEL = "panel"
    COMPUTE = "compute"
    GAME = "game"
    CLOUD = "cloud"


@dataclass(frozen=True)
class PollResult:
    """Normalized status of a provider task."""

    status: PollStatus
    details: dict[str, Any] = field(default_factory=dict)
    provider_ref: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"


@dataclass(frozen=True)
class WebhookResult:
    """Normalized webhook delivery; applied exactly like a poll result."""

    provider_task_id: str
    result: PollResult


@runtime_checkable
class Provider(Protocol):
    """Base contract every driver exposes."""

    name: str
    provider_type: ProviderType
    capabilities: frozenset[Capability]
    requires_credentials: bool

    async def aclose(self) -> None:
        ...


@runtime_checkable
class Provisioner(Protocol):
    """Mandatory lifecycle contract.

    ``provision`` returns the provider task id to poll. The other lifecycle
    calls return a task id when the provider works asynchronously, or ``None``
    when the change is already complete.
    """

    async def provision(
        self,
        spec: ResourceSpec,
        idempotency_key: str,
        *,
        credentials: SecretStr | None,
    ) -> str:
        ...

    async def poll(self, provider_task_id: str, *, credentials: SecretStr | None) -> PollResult:
        ...

    async def deprovision(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        ...

    async def suspend(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        ...

    async def resume(self, resource: Resource, *, credentials: SecretStr | None) -> str | None:
        ...

    async def resize(
        self,
        resource: Resource,
        spec: ResourceSpec,
        *,
        credentials: SecretStr | None,
    ) -> str | None:
        ...


@runtime_checkable
class MetricsCapable(Protocol):
    async def usage(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        ...

    async def health(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        ...

    async def costs(self, resource: Resource, *, credentials: SecretStr | None) -> dict[str, Any]:
        ...


@runtime_checkable
class InventoryCapable(Protocol):
    async def regions(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        ...

    async def images(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        ...

    async def plans(self, *, credentials: SecretStr | None) -> list[dict[str, Any]]:
        ...

    async def quotas(self, *, credentials: SecretStr | None) -> dict[str, Any]:
        ...


@runtime_checkable
class WebhookCapable(Protocol):
    def verify_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        ...

    def handle_webhook(self, payload: bytes) -> WebhookResult:
        ...


class Driver(Provider, Provisioner, Protocol):
    """A fully usable driver: base contract plus lifecycle."""


CAPABILITY_PROTOCOLS: Mapping[Capability, type] = {
    Capability.PROVISIONER: Provisioner,
    Capability.METRICS: MetricsCapable,
    Capability.INVENTORY: InventoryCapable,
    Capability.WEBHOOKS: WebhookCapable,
}
