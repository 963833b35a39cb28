import pytest
from provisioner.core.errors import ContractViolation, InvalidTransition
from provisioner.domain.models import ResourceStatus
from provisioner.lifecycle import (
    TRANSITIONS,
    LifecycleEvent,
    allowed_events,
    can_transition,
    is_valid_walk,
    transition,
)

S = ResourceStatus
E = LifecycleEvent

EXPECTED = {
    (None, E.create): S.pending,
    (S.pending, E.enqueue): S.queued,
    (S.queued, E.submitted): S.provisioning,
    (S.queued, E.failed): S.failed,
    (S.queued, E.timed_out): S.failed,
    (S.provisioning, E.succeeded): S.active,
    (S.provisioning, E.failed): S.failed,
    (S.provisioning, E.timed_out): S.failed,
    (S.active, E.suspend): S.suspended,
    (S.active, E.resize): S.updating,
    (S.active, E.deprovision): S.deprovisioning,
    (S.suspended, E.resume): S.resuming,
    (S.suspended, E.failed): S.failed,
    (S.suspended, E.timed_out): S.failed,
    (S.resuming, E.succeeded): S.active,
    (S.resuming, E.failed): S.failed,
    (S.resuming, E.timed_out): S.failed,
    (S.updating, E.succeeded): S.active,
    (S.updating, E.failed): S.failed,
    (S.updating, E.timed_out): S.failed,
    (S.failed, E.deprovision): S.deprovisioning,
    (S.deprovisioning, E.succeeded): S.deprovisioned,
}

ALL_PAIRS = [(status, event) for status in [None, *ResourceStatus] for event in LifecycleEvent]


def test_table_matches_expected_edges():
    assert dict(TRANSITIONS) == EXPECTED


@pytest.mark.parametrize("status,event", ALL_PAIRS)
def test_every_status_event_pair(status, event):
    if (status, event) in EXPECTED:
        result = transition(status, event, actor="tester")
        assert result.status == EXPECTED[(status, event)]
        assert can_transition(status, event)
    else:
        assert not can_transition(status, event)
        with pytest.raises(InvalidTransition):
            transition(status, event)


def test_transition_produces_audit_entry():
    result = transition(
        S.active, E.suspend, actor="admin", action="manual_suspend", metadata={"ticket": "OPS-1"}
    )

    assert result.audit.actor == "admin"
    assert result.audit.action == "manual_suspend"
    assert result.audit.status_before == S.active
    assert result.audit.status_after == S.suspended
    assert result.audit.metadata == {"ticket": "OPS-1"}


def test_action_defaults_to_event_name():
    result = transition(S.pending, E.enqueue)

    assert result.audit.action == "enqueue"
    assert result.audit.actor == "system"


def test_invalid_transition_is_contract_violation():
    with pytest.raises(ContractViolation) as exc_info:
        transition(S.deprovisioned, E.resume)

    assert exc_info.value.details == {"status": "deprovisioned", "event": "resume"}


def test_deprovisioned_is_terminal():
    assert allowed_events(S.deprovisioned) == []


def test_allowed_events_for_active():
    assert set(allowed_events(S.active)) == {E.suspend, E.resize, E.deprovision}


def test_valid_walk():
    assert is_valid_walk(
        [
            (None, S.pending),
            (S.pending, S.queued),
            (S.queued, S.provisioning),
            (S.provisioning, S.active),
            (S.active, S.deprovisioning),
            (S.deprovisioning, S.deprovisioned),
        ]
    )


def test_walk_with_gap_is_invalid():
    assert not is_valid_walk([(None, S.pending), (S.queued, S.provisioning)])


def test_walk_with_illegal_edge_is_invalid():
    assert not is_valid_walk([(None, S.pending), (S.pending, S.active)])
