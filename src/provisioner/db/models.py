from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from provisioner.core.errors import AuditLedgerViolation
from provisioner.domain.models import CredentialScope, ResourceStatus, TaskAction, TaskStatus


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ResourceModel(Base):
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_ref: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    driver: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    provider_ref: Mapped[str | None] = mapped_column(String(255))
    plan_code: Mapped[str] = mapped_column(String(100), nullable=False)
    region: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(ResourceStatus, name="resource_status", native_enum=False), nullable=False, index=True
    )
    spec: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    billing_item_id: Mapped[str | None] = mapped_column(String(255))
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class ProvisionTaskModel(Base):
    __tablename__ = "provision_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    resource_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("resources.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(
        Enum(TaskAction, name="task_action", native_enum=False), nullable=False
    )
    status: Mapped[str] = mapped_column(
        Enum(TaskStatus, name="task_status", native_enum=False), nullable=False, index=True
    )
    provider_task_id: Mapped[str | None] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    poll_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_error: Mapped[str | None] = mapped_column(Text)
    # "<resource_id>:<action>" while pending, NULL once terminal
    inflight_key: Mapped[str | None] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (Index("idx_tasks_provider_task", "provider_task_id"),)


class CredentialModel(Base):
    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    driver: Mapped[str] = mapped_column(String(100), nullable=False)
    encrypted_payload: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(
        Enum(CredentialScope, name="credential_scope", native_enum=False), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(String(255))
    created_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_credentials_driver_scope", "driver", "scope", "user_id"),)


class PlanMapModel(Base):
    __tablename__ = "plan_maps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    billing_plan: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    driver: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_plan: Mapped[str] = mapped_column(String(100), nullable=False)
    region: Mapped[str] = mapped_column(String(100), nullable=False)
    extra: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class ProvisionAuditModel(Base):
    """Insert-only ledger row. Updates and deletes are rejected below."""

    __tablename__ = "provision_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # lookup only, never cascades
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    status_before: Mapped[str | None] = mapped_column(String(50))
    status_after: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_audits_resource", "resource_id", "id"),)


@event.listens_for(ProvisionAuditModel, "before_update")
def _reject_audit_update(mapper: Any, connection: Any, target: ProvisionAuditModel) -> None:
    raise AuditLedgerViolation("provision_audits is append-only", {"audit_id": target.id})


@event.listens_for(ProvisionAuditModel, "before_delete")
def _reject_audit_delete(mapper: Any, connection: Any, target: ProvisionAuditModel) -> None:
    raise AuditLedgerViolation("provision_audits is append-only", {"audit_id": target.id})


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_writes(state: Any) -> None:
    if not (state.is_update or state.is_delete):
        return
    table = getattr(state.statement, "table", None)
    if table is not None and table.name == ProvisionAuditModel.__tablename__:
        raise AuditLedgerViolation("provision_audits is append-only")
