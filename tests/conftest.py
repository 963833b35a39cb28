"""Root test configuration."""

import json
import logging
import random

import pytest
import structlog
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from provisioner.config import Settings
from provisioner.db.models import Base
from provisioner.db.repositories import PlanMapRepository
from provisioner.db.session import use_session_factory
from provisioner.domain.models import Order, PlanMap
from provisioner.drivers.base import Capability, PollResult, ProviderType, WebhookResult
from provisioner.drivers.registry import DriverRegistry
from provisioner.queue.memory import InMemoryJobQueue
from provisioner.runtime import build_runtime


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


class FakeClock:
    """Manually advanced clock for breakers and the in-memory queue."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDriver:
    """Scriptable driver that records every call it receives."""

    provider_type = ProviderType.COMPUTE

    def __init__(
        self,
        name: str = "fake",
        *,
        capabilities=None,
        requires_credentials: bool = False,
    ) -> None:
        self.name = name
        self.capabilities = frozenset(
            capabilities
            if capabilities is not None
            else {Capability.PROVISIONER, Capability.METRICS, Capability.WEBHOOKS}
        )
        self.requires_credentials = requires_credentials
        self.provision_keys: list[str] = []
        self.provision_errors: list[Exception] = []
        self.poll_results: list[PollResult] = []
        self.poll_errors: list[Exception] = []
        self.poll_calls = 0
        self.action_results: dict[str, str | None] = {}
        self.action_errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.resized_to = None
        self.health_state = {"state": "running"}
        self.seen_credentials: list = []
        self.closed = False

    async def provision(self, spec, idempotency_key, *, credentials):
        self.provision_keys.append(idempotency_key)
        self.seen_credentials.append(credentials)
        if self.provision_errors:
            raise self.provision_errors.pop(0)
        return f"ptask-{len(self.provision_keys)}"

    async def poll(self, provider_task_id, *, credentials):
        self.poll_calls += 1
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        if not self.poll_results:
            return PollResult(status="pending")
        if len(self.poll_results) > 1:
            return self.poll_results.pop(0)
        return self.poll_results[0]

    async def _action(self, action, resource):
        self.calls.append((action, resource.id))
        if action in self.action_errors:
            raise self.action_errors[action]
        return self.action_results.get(action)

    async def deprovision(self, resource, *, credentials):
        return await self._action("deprovision", resource)

    async def suspend(self, resource, *, credentials):
        return await self._action("suspend", resource)

    async def resume(self, resource, *, credentials):
        return await self._action("resume", resource)

    async def resize(self, resource, spec, *, credentials):
        self.resized_to = spec
        return await self._action("resize", resource)

    async def usage(self, resource, *, credentials):
        return {"cpu": 0.1}

    async def health(self, resource, *, credentials):
        self.calls.append(("health", resource.id))
        if "health" in self.action_errors:
            raise self.action_errors["health"]
        return dict(self.health_state)

    async def costs(self, resource, *, credentials):
        return {"month_to_date": 1.5}

    def verify_signature(self, payload, headers):
        return headers.get("x-signature") == "valid"

    def handle_webhook(self, payload):
        body = json.loads(payload)
        return WebhookResult(
            provider_task_id=body["task_id"],
            result=PollResult(status=body["status"], provider_ref=body.get("resource_id")),
        )

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/provisioner.db",
        vault_key=Fernet.generate_key().decode(),
        poll_initial_delay=0.0,
        poll_base_delay=1.0,
        poll_max_delay=8.0,
        poll_jitter_ratio=0.5,
        poll_max_attempts=5,
        dispatch_max_attempts=3,
        breaker_failure_ratio=0.5,
        breaker_min_calls=3,
        breaker_window_seconds=60.0,
        breaker_cooldown_seconds=30.0,
    )


@pytest.fixture
async def session_factory(settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    use_session_factory(factory)
    yield factory
    use_session_factory(None)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(clock=clock)


@pytest.fixture
async def runtime(settings, driver, queue, clock):
    runtime = build_runtime(
        settings,
        registry=DriverRegistry({"fake": driver}),
        queue=queue,
        rng=random.Random(7),
        clock=clock,
    )
    await runtime.start()
    yield runtime
    await runtime.stop()


@pytest.fixture
async def plan(session_factory):
    plan_map = PlanMap(
        billing_plan="vps-small",
        driver="fake",
        provider_plan="cx11",
        region="eu-central",
        extra={"image": "debian-12"},
    )
    async with session_factory() as session:
        await PlanMapRepository(session).add(plan_map)
        await session.commit()
    return plan_map


def make_order(order_id: str = "ord-1", **overrides) -> Order:
    fields = {
        "id": order_id,
        "user_id": "user-1",
        "plan_code": "vps-small",
        "billing_item_id": "item-1",
        "options": {"hostname": "web-1"},
    }
    fields.update(overrides)
    return Order(**fields)
