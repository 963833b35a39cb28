"""
Inbound and outbound domain events.

Listeners are wired through an explicit subscription table owned by the
runtime: populated in ``Runtime.start`` and cleared in ``Runtime.stop``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from provisioner.domain.models import Order, Resource, ResourceStatus
from provisioner.queue.scheduler import JobTypes, TaskScheduler

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class PaymentCaptured:
    order: Order


@dataclass(frozen=True)
class OrderPlaced:
    resource_id: str
    order_ref: str
    driver: str


@dataclass(frozen=True)
class ResourceProvisioned:
    resource_id: str
    order_ref: str


@dataclass(frozen=True)
class ResourceSuspended:
    resource_id: str
    order_ref: str


@dataclass(frozen=True)
class ResourceDeprovisioned:
    resource_id: str
    order_ref: str


@dataclass(frozen=True)
class ResourceFailed:
    resource_id: str
    order_ref: str
    reason: str | None


def event_for_transition(
    resource: Resource,
    before: ResourceStatus | None,
    after: ResourceStatus,
    *,
    reason: str | None = None,
) -> Any | None:
    """Outbound event fired for an accepted transition, if any."""
    if after is ResourceStatus.queued:
        return OrderPlaced(resource.id, resource.order_ref, resource.driver)
    if after is ResourceStatus.active and before is ResourceStatus.provisioning:
        return ResourceProvisioned(resource.id, resource.order_ref)
    if after is ResourceStatus.suspended:
        return ResourceSuspended(resource.id, resource.order_ref)
    if after is ResourceStatus.deprovisioned:
        return ResourceDeprovisioned(resource.id, resource.order_ref)
    if after is ResourceStatus.failed:
        return ResourceFailed(resource.id, resource.order_ref, reason)
    return None


class EventBus:
    """In-process publish/subscribe with an explicit registration table."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def subscriptions(self) -> dict[str, int]:
        return {event_type.__name__: len(handlers) for event_type, handlers in self._handlers.items()}

    async def publish(self, event: Any) -> None:
        """Deliver to every handler. A failing handler never affects the publisher."""
        for handler in list(self._handlers.get(type(event), ())):
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    exc_info=True,
                )


class PaymentCapturedListener:
    """Hands captured payments to the worker pool as ``order.kick`` jobs."""

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler

    async def __call__(self, event: PaymentCaptured) -> None:
        order = event.order
        if not order.requires_provisioning:
            logger.debug("payment_ignored_no_provisioning", order_id=order.id)
            return
        await self._scheduler.submit(
            JobTypes.KICK,
            {"order": order.model_dump(mode="json")},
            key=order.id,
            requested_by=order.user_id,
        )
        logger.info("order_kick_enqueued", order_id=order.id, plan=order.plan_code)
