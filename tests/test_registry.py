import pytest

from conftest import FakeDriver
from provisioner.core.errors import ConfigurationError, UnsupportedCapability
from provisioner.drivers import Capability, DriverRegistry, ProviderType, default_factories
from provisioner.drivers.rest import RestComputeDriver


class ProvisionOnly:
    """Implements the lifecycle but nothing optional."""

    name = "panel"
    provider_type = ProviderType.PANEL
    requires_credentials = True

    def __init__(self, capabilities):
        self.capabilities = frozenset(capabilities)

    async def provision(self, spec, idempotency_key, *, credentials):
        return "t-1"

    async def poll(self, provider_task_id, *, credentials):
        raise NotImplementedError

    async def deprovision(self, resource, *, credentials):
        return None

    async def suspend(self, resource, *, credentials):
        return None

    async def resume(self, resource, *, credentials):
        return None

    async def resize(self, resource, spec, *, credentials):
        return None

    async def aclose(self):
        pass


def test_capabilities_are_declared_not_probed():
    registry = DriverRegistry(
        {"fake": FakeDriver(), "panel": ProvisionOnly({Capability.PROVISIONER})}
    )

    assert registry.supports("fake", Capability.METRICS)
    assert not registry.supports("panel", Capability.METRICS)
    assert not registry.supports("missing", Capability.PROVISIONER)
    assert registry.require("fake", Capability.WEBHOOKS).name == "fake"


def test_require_unsupported_capability():
    registry = DriverRegistry({"panel": ProvisionOnly({Capability.PROVISIONER})})

    with pytest.raises(UnsupportedCapability) as exc_info:
        registry.require("panel", Capability.INVENTORY)

    assert exc_info.value.details == {"driver": "panel", "capability": "inventory"}


def test_get_unknown_driver():
    registry = DriverRegistry({"fake": FakeDriver()})

    with pytest.raises(ConfigurationError, match="not registered"):
        registry.get("hetzner")


def test_provisioner_capability_is_mandatory():
    with pytest.raises(ConfigurationError, match="must declare the provisioner"):
        DriverRegistry({"fake": FakeDriver(capabilities={Capability.METRICS})})


def test_declared_capability_must_be_implemented():
    with pytest.raises(ConfigurationError, match="declares metrics"):
        DriverRegistry({"panel": ProvisionOnly({Capability.PROVISIONER, Capability.METRICS})})


def test_object_without_provider_contract_is_rejected():
    with pytest.raises(ConfigurationError, match="provider contract"):
        DriverRegistry({"broken": object()})


def test_registry_is_read_only():
    registry = DriverRegistry({"fake": FakeDriver()})

    with pytest.raises(TypeError):
        registry._drivers["other"] = FakeDriver()


def test_describe_lists_drivers_sorted():
    registry = DriverRegistry(
        {"panel": ProvisionOnly({Capability.PROVISIONER}), "fake": FakeDriver()}
    )

    described = registry.describe()

    assert [d.driver_id for d in described] == ["fake", "panel"]
    assert described[1].provider_type is ProviderType.PANEL
    assert described[1].capabilities == frozenset({Capability.PROVISIONER})
    assert registry.ids() == ["fake", "panel"]


def test_from_config_builds_through_factories(settings):
    registry = DriverRegistry.from_config(
        {"hetzner": {"kind": "rest", "base_url": "https://api.example.com", "webhook_secret": "s"}},
        default_factories(),
        settings=settings,
    )

    driver = registry.get("hetzner")
    assert isinstance(driver, RestComputeDriver)
    assert registry.supports("hetzner", Capability.WEBHOOKS)


def test_from_config_unknown_kind():
    with pytest.raises(ConfigurationError, match="Unknown driver kind 'soap'"):
        DriverRegistry.from_config({"legacy": {"kind": "soap"}}, default_factories())


@pytest.mark.asyncio
async def test_aclose_closes_every_driver():
    first, second = FakeDriver("a"), FakeDriver("b")
    registry = DriverRegistry({"a": first, "b": second})

    await registry.aclose()

    assert first.closed and second.closed
