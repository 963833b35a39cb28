from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_ACTOR = "system"


class ResourceStatus(StrEnum):
    """Lifecycle states of a provisioned resource."""

    pending = "pending"
    queued = "queued"
    provisioning = "provisioning"
    active = "active"
    suspended = "suspended"
    resuming = "resuming"
    updating = "updating"
    failed = "failed"
    deprovisioning = "deprovisioning"
    deprovisioned = "deprovisioned"


class TaskAction(StrEnum):
    provision = "provision"
    deprovision = "deprovision"
    suspend = "suspend"
    resume = "resume"
    resize = "resize"
    sync = "sync"


class TaskStatus(StrEnum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class CredentialScope(StrEnum):
    user = "user"
    system = "system"


class Order(BaseModel):
    """Captured order handed over by billing."""

    id: str
    user_id: str
    plan_code: str
    requires_provisioning: bool = True
    billing_item_id: str | None = None
    options: Mapping[str, Any] = Field(default_factory=dict)


class ResourceSpec(BaseModel):
    """Provider-neutral description of what should be built."""

    model_config = ConfigDict(frozen=True)

    plan: str
    region: str
    hostname: str | None = None
    image: str | None = None
    extra: Mapping[str, Any] = Field(default_factory=dict)

    def with_changes(self, changes: Mapping[str, Any]) -> ResourceSpec:
        known = {k: v for k, v in changes.items() if k in {"plan", "region", "hostname", "image"}}
        extra = dict(self.extra)
        extra.update({k: v for k, v in changes.items() if k not in known})
        return self.model_copy(update={**known, "extra": extra})


class PlanMap(BaseModel):
    billing_plan: str
    driver: str
    provider_plan: str
    region: str
    extra: Mapping[str, Any] = Field(default_factory=dict)


class Resource(BaseModel):
    id: str
    order_ref: str
    user_id: str
    driver: str
    plan_code: str
    region: str
    spec: ResourceSpec
    status: ResourceStatus = ResourceStatus.pending
    provider_ref: str | None = None
    billing_item_id: str | None = None
    last_synced_at: datetime | None = None
    created_at: datetime | None = None


class ProvisionTask(BaseModel):
    id: str
    resource_id: str
    action: TaskAction
    status: TaskStatus = TaskStatus.pending
    provider_task_id: str | None = None
    attempts: int = 0
    poll_count: int = 0
    payload: Mapping[str, Any] = Field(default_factory=dict)
    last_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TaskStatus.pending


class Credential(BaseModel):
    id: str
    name: str
    driver: str
    scope: CredentialScope
    encrypted_payload: str
    user_id: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class ProvisionAudit(BaseModel):
    id: int
    resource_id: str
    actor: str
    action: str
    status_before: ResourceStatus | None
    status_after: ResourceStatus
    details: Mapping[str, Any] = Field(default_factory=dict)
    created_at: datetime
