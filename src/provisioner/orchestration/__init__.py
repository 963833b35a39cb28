"""Provisioning orchestration: order intake, task dispatch and polling."""

from provisioner.orchestration.orchestrator import DRIFT_EVENTS, Orchestrator, build_spec
from provisioner.orchestration.poller import TaskPoller

__all__ = ["DRIFT_EVENTS", "Orchestrator", "TaskPoller", "build_spec"]
