"""Resource lifecycle: the single authority on legal status changes."""

from provisioner.lifecycle.state_machine import (
    STABLE_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    AuditEntry,
    LifecycleEvent,
    Transition,
    allowed_events,
    can_transition,
    is_valid_walk,
    transition,
)

__all__ = [
    "AuditEntry",
    "LifecycleEvent",
    "STABLE_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "Transition",
    "allowed_events",
    "can_transition",
    "is_valid_walk",
    "transition",
]
