"""Process-wide wiring: drivers, breakers, queue, scheduler and event bus."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import structlog
from cryptography.fernet import Fernet

from provisioner.config import Settings, get_settings
from provisioner.core.errors import ConfigurationError
from provisioner.drivers.registry import DriverFactory, DriverRegistry, default_factories
from provisioner.events import EventBus, PaymentCaptured, PaymentCapturedListener
from provisioner.queue import InMemoryJobQueue, JobQueue, SqsJobQueue, TaskScheduler
from provisioner.resilience import CircuitBreakerRegistry
from provisioner.vault import build_cipher

logger = structlog.get_logger()


@dataclass
class Runtime:
    settings: Settings
    registry: DriverRegistry
    breakers: CircuitBreakerRegistry
    queue: JobQueue
    scheduler: TaskScheduler
    events: EventBus
    cipher: Fernet
    rng: random.Random = field(default_factory=random.Random)
    started: bool = False

    async def start(self) -> None:
        """Populate the event subscription table."""
        if self.started:
            return
        self.events.subscribe(PaymentCaptured, PaymentCapturedListener(self.scheduler))
        self.started = True
        logger.info("runtime_started", drivers=self.registry.ids(), subscriptions=self.events.subscriptions())

    async def stop(self) -> None:
        self.events.clear()
        await self.registry.aclose()
        self.started = False
        logger.info("runtime_stopped")


def build_queue(settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> JobQueue:
    backend = settings.job_queue_backend
    if backend == "memory":
        return InMemoryJobQueue(clock=clock)
    if backend == "sqs":
        return SqsJobQueue(settings)
    raise ConfigurationError(f"Unknown job queue backend '{backend}'", {"backend": backend})


def build_runtime(
    settings: Settings | None = None,
    *,
    registry: DriverRegistry | None = None,
    factories: Mapping[str, DriverFactory] | None = None,
    queue: JobQueue | None = None,
    breakers: CircuitBreakerRegistry | None = None,
    rng: random.Random | None = None,
    clock: Callable[[], float] = time.monotonic,
    **driver_options: Any,
) -> Runtime:
    """Assemble a runtime from settings.

    Tests pass a prebuilt ``registry`` and ``queue``; production builds both
    from ``settings.drivers`` and ``settings.job_queue_backend``. A ``breakers``
    registry passed in is shared, so breaker state outlives this runtime.
    """
    cfg = settings or get_settings()
    if registry is None:
        registry = DriverRegistry.from_config(
            cfg.drivers,
            factories or default_factories(),
            settings=cfg,
            **driver_options,
        )
    queue = queue if queue is not None else build_queue(cfg, clock=clock)
    return Runtime(
        settings=cfg,
        registry=registry,
        breakers=breakers if breakers is not None else CircuitBreakerRegistry(cfg, clock=clock),
        queue=queue,
        scheduler=TaskScheduler(queue),
        events=EventBus(),
        cipher=build_cipher(cfg),
        rng=rng or random.Random(),
    )
