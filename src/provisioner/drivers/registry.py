from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping

import structlog

from provisioner.core.errors import ConfigurationError, UnsupportedCapability
from provisioner.drivers.base import CAPABILITY_PROTOCOLS, Capability, Driver, Provider, ProviderType

logger = structlog.get_logger()

DriverFactory = Callable[..., Driver]


@dataclass(frozen=True)
class DriverSpec:
    """Metadata describing a registered driver."""

    driver_id: str
    name: str
    provider_type: ProviderType
    capabilities: frozenset[Capability]


class DriverRegistry:
    """Immutable map of driver id -> constructed driver, built once at start."""

    def __init__(self, drivers: Mapping[str, Driver]) -> None:
        for driver_id, driver in drivers.items():
            self._validate(driver_id, driver)
        self._drivers: Mapping[str, Driver] = MappingProxyType(dict(drivers))

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Mapping[str, Any]],
        factories: Mapping[str, DriverFactory],
        **shared: Any,
    ) -> DriverRegistry:
        """Construct every configured driver through its factory.

        ``config`` maps driver id to a dict whose ``kind`` selects the factory;
        the remaining keys plus ``shared`` are passed to it.
        """
        drivers: dict[str, Driver] = {}
        for driver_id, options in config.items():
            options = dict(options)
            kind = options.pop("kind", None)
            factory = factories.get(kind or "")
            if factory is None:
                raise ConfigurationError(
                    f"Unknown driver kind '{kind}'", {"driver": driver_id, "kind": kind}
                )
            drivers[driver_id] = factory(driver_id=driver_id, **options, **shared)
            logger.info("driver_registered", driver=driver_id, kind=kind)
        return cls(drivers)

    def get(self, driver_id: str) -> Driver:
        driver = self._drivers.get(driver_id)
        if driver is None:
            raise ConfigurationError(f"Driver '{driver_id}' is not registered", {"driver": driver_id})
        return driver

    def supports(self, driver_id: str, capability: Capability) -> bool:
        driver = self._drivers.get(driver_id)
        return driver is not None and capability in driver.capabilities

    def require(self, driver_id: str, capability: Capability) -> Any:
        """Return the driver if it declares ``capability``, else raise."""
        driver = self.get(driver_id)
        if capability not in driver.capabilities:
            raise UnsupportedCapability(
                f"Driver '{driver_id}' does not support {capability.value}",
                {"driver": driver_id, "capability": capability.value},
            )
        return driver

    def ids(self) -> list[str]:
        return sorted(self._drivers)

    def describe(self) -> list[DriverSpec]:
        return [
            DriverSpec(
                driver_id=driver_id,
                name=driver.name,
                provider_type=driver.provider_type,
                capabilities=frozenset(driver.capabilities),
            )
            for driver_id, driver in sorted(self._drivers.items())
        ]

    async def aclose(self) -> None:
        for driver in self._drivers.values():
            await driver.aclose()

    @staticmethod
    def _validate(driver_id: str, driver: Any) -> None:
        if not isinstance(driver, Provider):
            raise ConfigurationError(
                f"Driver '{driver_id}' does not implement the provider contract",
                {"driver": driver_id},
            )
        if Capability.PROVISIONER not in driver.capabilities:
            raise ConfigurationError(
                f"Driver '{driver_id}' must declare the provisioner capability",
                {"driver": driver_id},
            )
        for capability in driver.capabilities:
            protocol = CAPABILITY_PROTOCOLS[capability]
            if not isinstance(driver, protocol):
                raise ConfigurationError(
                    f"Driver '{driver_id}' declares {capability.value} but does not implement it",
                    {"driver": driver_id, "capability": capability.value},
                )


def default_factories() -> dict[str, DriverFactory]:
    """Driver kinds shipped with the provisioner."""
    from provisioner.drivers.rest import RestComputeDriver

    return {"rest": RestComputeDriver.from_config}
