"""
Resource lifecycle state machine.

A pure function over (current status, event). The orchestrator and the task
poller both route every status change through :func:`transition`; anything not
listed in :data:`TRANSITIONS` is rejected before a write happens, so an illegal
edge can never reach the database or the audit ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Mapping

from provisioner.core.errors import InvalidTransition
from provisioner.domain.models import SYSTEM_ACTOR, ResourceStatus


class LifecycleEvent(StrEnum):
    create = "create"
    enqueue = "enqueue"
    submitted = "submitted"
    succeeded = "succeeded"
    failed = "failed"
    timed_out = "timed_out"
    suspend = "suspend"
    resume = "resume"
    resize = "resize"
    deprovision = "deprovision"


S = ResourceStatus
E = LifecycleEvent

# (status before, event) -> status after. ``None`` is "no resource yet".
TRANSITIONS: Mapping[tuple[ResourceStatus | None, LifecycleEvent], ResourceStatus] = {
    (None, E.create): S.pending,
    (S.pending, E.enqueue): S.queued,
    (S.queued, E.submitted): S.provisioning,
    # nothing exists provider-side yet; the attempt failed before a task was returned
    (S.queued, E.failed): S.failed,
    (S.queued, E.timed_out): S.failed,
    (S.provisioning, E.succeeded): S.active,
    (S.active, E.suspend): S.suspended,
    (S.suspended, E.resume): S.resuming,
    (S.resuming, E.succeeded): S.active,
    (S.active, E.resize): S.updating,
    (S.updating, E.succeeded): S.active,
    (S.provisioning, E.failed): S.failed,
    (S.provisioning, E.timed_out): S.failed,
    (S.suspended, E.failed): S.failed,
    (S.suspended, E.timed_out): S.failed,
    (S.resuming, E.failed): S.failed,
    (S.resuming, E.timed_out): S.failed,
    (S.updating, E.failed): S.failed,
    (S.updating, E.timed_out): S.failed,
    (S.active, E.deprovision): S.deprovisioning,
    (S.failed, E.deprovision): S.deprovisioning,
    (S.deprovisioning, E.succeeded): S.deprovisioned,
}

TERMINAL_STATUSES = frozenset({S.deprovisioned})
STABLE_STATUSES = frozenset({S.active, S.failed, S.deprovisioned})


@dataclass(frozen=True)
class AuditEntry:
    """Audit payload produced alongside an accepted transition."""

    actor: str
    action: str
    status_before: ResourceStatus | None
    status_after: ResourceStatus
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    status: ResourceStatus
    event: LifecycleEvent
    audit: AuditEntry


def can_transition(current: ResourceStatus | None, event: LifecycleEvent) -> bool:
    return (current, event) in TRANSITIONS


def allowed_events(current: ResourceStatus | None) -> list[LifecycleEvent]:
    return [event for (status, event) in TRANSITIONS if status == current]


def transition(
    current: ResourceStatus | None,
    event: LifecycleEvent,
    *,
    actor: str = SYSTEM_ACTOR,
    action: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> Transition:
    """Authorize a lifecycle move.

    Returns the new status together with the audit payload to persist, or
    raises :class:`InvalidTransition` when the edge is not in the table.
    """
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(
            f"Illegal resource transition: {current.value if current else 'none'} --{event.value}-->",
            {"status": current.value if current else None, "event": event.value},
        )
    audit = AuditEntry(
        actor=actor,
        action=action or event.value,
        status_before=current,
        status_after=target,
        metadata=dict(metadata or {}),
    )
    return Transition(status=target, event=event, audit=audit)


def is_valid_walk(statuses: Iterable[tuple[ResourceStatus | None, ResourceStatus]]) -> bool:
    """Check a ledger's (before, after) pairs form a connected legal walk."""
    previous: ResourceStatus | None = None
    first = True
    legal_edges = {(before, after) for (before, _), after in TRANSITIONS.items()}
    for before, after in statuses:
        if not first and before != previous:
            return False
        if (before, after) not in legal_edges:
            return False
        previous = after
        first = False
    return True
