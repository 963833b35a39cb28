from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from provisioner.db import models as db_models
from provisioner.db.models import utcnow
from provisioner.domain.models import (
    Credential,
    CredentialScope,
    PlanMap,
    ProvisionTask,
    Resource,
    ResourceSpec,
    ResourceStatus,
    TaskAction,
    TaskStatus,
)


def new_id() -> str:
    return str(uuid.uuid4())


def inflight_key(resource_id: str, action: TaskAction) -> str:
    return f"{resource_id}:{action.value}"


@dataclass(slots=True)
class ResourceRepository:
    """Persistence helpers for resources. Status writes go through the orchestrator."""

    session: AsyncSession

    async def create(self, resource: Resource) -> None:
        self.session.add(
            db_models.ResourceModel(
                id=resource.id,
                order_ref=resource.order_ref,
                user_id=resource.user_id,
                driver=resource.driver,
                provider_ref=resource.provider_ref,
                plan_code=resource.plan_code,
                region=resource.region,
                status=resource.status.value,
                spec=resource.spec.model_dump(mode="json"),
                billing_item_id=resource.billing_item_id,
            )
        )
        await self.session.flush()

    async def get(self, resource_id: str, *, for_update: bool = False) -> Resource | None:
        stmt = (
            select(db_models.ResourceModel)
            .where(db_models.ResourceModel.id == resource_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def get_by_order(self, order_ref: str) -> Resource | None:
        stmt = (
            select(db_models.ResourceModel)
            .where(db_models.ResourceModel.order_ref == order_ref)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def set_status(
        self,
        resource_id: str,
        status: ResourceStatus,
        *,
        provider_ref: str | None = None,
        spec: ResourceSpec | None = None,
        last_synced_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if provider_ref is not None:
            values["provider_ref"] = provider_ref
        if spec is not None:
            values["spec"] = spec.model_dump(mode="json")
        if last_synced_at is not None:
            values["last_synced_at"] = last_synced_at
        await self.session.execute(
            update(db_models.ResourceModel)
            .where(db_models.ResourceModel.id == resource_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def touch_synced(self, resource_id: str, when: datetime) -> None:
        await self.session.execute(
            update(db_models.ResourceModel)
            .where(db_models.ResourceModel.id == resource_id)
            .values(last_synced_at=when)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _to_domain(row: db_models.ResourceModel) -> Resource:
        return Resource(
            id=row.id,
            order_ref=row.order_ref,
            user_id=row.user_id,
            driver=row.driver,
            provider_ref=row.provider_ref,
            plan_code=row.plan_code,
            region=row.region,
            status=ResourceStatus(row.status),
            spec=ResourceSpec.model_validate(row.spec),
            billing_item_id=row.billing_item_id,
            last_synced_at=row.last_synced_at,
            created_at=row.created_at,
        )


@dataclass(slots=True)
class TaskRepository:
    """Persistence helpers for provider tasks.

    Counters are advanced with compare-and-set updates so a duplicated job
    delivery observes a stale value and backs off.
    """

    session: AsyncSession

    async def create(self, task: ProvisionTask) -> None:
        self.session.add(
            db_models.ProvisionTaskModel(
                id=task.id,
                resource_id=task.resource_id,
                action=task.action.value,
                status=task.status.value,
                provider_task_id=task.provider_task_id,
                attempts=task.attempts,
                poll_count=task.poll_count,
                payload=dict(task.payload),
                inflight_key=inflight_key(task.resource_id, task.action),
            )
        )
        await self.session.flush()

    async def get(self, task_id: str) -> ProvisionTask | None:
        stmt = (
            select(db_models.ProvisionTaskModel)
            .where(db_models.ProvisionTaskModel.id == task_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def get_active(self, resource_id: str, action: TaskAction) -> ProvisionTask | None:
        stmt = (
            select(db_models.ProvisionTaskModel)
            .where(db_models.ProvisionTaskModel.inflight_key == inflight_key(resource_id, action))
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def list_for_resource(
        self, resource_id: str, *, pending_only: bool = False
    ) -> list[ProvisionTask]:
        stmt = (
            select(db_models.ProvisionTaskModel)
            .where(db_models.ProvisionTaskModel.resource_id == resource_id)
            .order_by(db_models.ProvisionTaskModel.created_at)
            .execution_options(populate_existing=True)
        )
        if pending_only:
            stmt = stmt.where(db_models.ProvisionTaskModel.status == TaskStatus.pending.value)
        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def find_by_provider_task(self, driver: str, provider_task_id: str) -> ProvisionTask | None:
        stmt = (
            select(db_models.ProvisionTaskModel)
            .join(
                db_models.ResourceModel,
                db_models.ResourceModel.id == db_models.ProvisionTaskModel.resource_id,
            )
            .where(
                db_models.ResourceModel.driver == driver,
                db_models.ProvisionTaskModel.provider_task_id == provider_task_id,
            )
            .order_by(db_models.ProvisionTaskModel.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        return self._to_domain(row) if row else None

    async def claim_attempt(self, task_id: str, expected: int) -> bool:
        """Advance ``attempts`` from ``expected`` to ``expected + 1`` if still pending."""
        return await self._compare_and_increment(task_id, "attempts", expected)

    async def claim_poll(self, task_id: str, expected: int) -> bool:
        return await self._compare_and_increment(task_id, "poll_count", expected)

    async def record_submission(self, task_id: str, provider_task_id: str) -> None:
        await self._update(task_id, provider_task_id=provider_task_id, last_error=None)

    async def note_error(self, task_id: str, error: str) -> None:
        await self._update(task_id, last_error=error)

    async def finish(self, task_id: str, status: TaskStatus, *, last_error: str | None = None) -> bool:
        """Mark a pending task terminal. Returns False if it already was."""
        model = db_models.ProvisionTaskModel
        values: dict[str, Any] = {
            "status": status.value,
            "inflight_key": None,
            "finished_at": utcnow(),
            "updated_at": utcnow(),
        }
        if last_error is not None:
            values["last_error"] = last_error
        result = await self.session.execute(
            update(model)
            .where(model.id == task_id, model.status == TaskStatus.pending.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def _compare_and_increment(self, task_id: str, column: str, expected: int) -> bool:
        model = db_models.ProvisionTaskModel
        counter = getattr(model, column)
        result = await self.session.execute(
            update(model)
            .where(
                model.id == task_id,
                counter == expected,
                model.status == TaskStatus.pending.value,
            )
            .values({column: expected + 1, "updated_at": utcnow()})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def _update(self, task_id: str, **values: Any) -> None:
        model = db_models.ProvisionTaskModel
        values["updated_at"] = utcnow()
        await self.session.execute(
            update(model)
            .where(model.id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _to_domain(row: db_models.ProvisionTaskModel) -> ProvisionTask:
        return ProvisionTask(
            id=row.id,
            resource_id=row.resource_id,
            action=TaskAction(row.action),
            status=TaskStatus(row.status),
            provider_task_id=row.provider_task_id,
            attempts=row.attempts,
            poll_count=row.poll_count,
            payload=row.payload or {},
            last_error=row.last_error,
        )


@dataclass(slots=True)
class PlanMapRepository:
    session: AsyncSession

    async def get(self, billing_plan: str) -> PlanMap | None:
        stmt = select(db_models.PlanMapModel).where(
            db_models.PlanMapModel.billing_plan == billing_plan
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if not row:
            return None
        return PlanMap(
            billing_plan=row.billing_plan,
            driver=row.driver,
            provider_plan=row.provider_plan,
            region=row.region,
            extra=row.extra or {},
        )

    async def add(self, plan_map: PlanMap) -> None:
        self.session.add(
            db_models.PlanMapModel(
                billing_plan=plan_map.billing_plan,
                driver=plan_map.driver,
                provider_plan=plan_map.provider_plan,
                region=plan_map.region,
                extra=dict(plan_map.extra),
            )
        )
        await self.session.flush()


@dataclass(slots=True)
class CredentialRepository:
    session: AsyncSession

    async def add(self, credential: Credential) -> None:
        self.session.add(
            db_models.CredentialModel(
                id=credential.id,
                name=credential.name,
                driver=credential.driver,
                encrypted_payload=credential.encrypted_payload,
                scope=credential.scope.value,
                user_id=credential.user_id,
                created_by=credential.created_by,
            )
        )
        await self.session.flush()

    async def get(self, credential_id: str) -> Credential | None:
        stmt = select(db_models.CredentialModel).where(
            db_models.CredentialModel.id == credential_id
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def find(
        self, driver: str, scope: CredentialScope, user_id: str | None = None
    ) -> Credential | None:
        """Most recent credential for a driver within one scope."""
        model = db_models.CredentialModel
        stmt = select(model).where(model.driver == driver, model.scope == scope.value)
        if scope is CredentialScope.user:
            stmt = stmt.where(model.user_id == user_id)
        stmt = stmt.order_by(model.created_at.desc())
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        return self._to_domain(row) if row else None

    @staticmethod
    def _to_domain(row: db_models.CredentialModel) -> Credential:
        return Credential(
            id=row.id,
            name=row.name,
            driver=row.driver,
            scope=CredentialScope(row.scope),
            encrypted_payload=row.encrypted_payload,
            user_id=row.user_id,
            created_by=row.created_by,
            created_at=row.created_at,
        )
