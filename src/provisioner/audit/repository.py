"""
Audit ledger repository.

Handles database operations for provision audit rows. The table is
insert-only: this class exposes no update or delete, and the ORM layer
rejects both (see ``provisioner.db.models``).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from provisioner.db.models import ProvisionAuditModel
from provisioner.domain.models import ProvisionAudit, ResourceStatus


class AuditRepository:
    """Repository for provision audit database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        *,
        resource_id: str,
        actor: str,
        action: str,
        status_before: ResourceStatus | None,
        status_after: ResourceStatus,
        details: dict[str, Any],
    ) -> ProvisionAudit:
        """Insert a ledger row and return it with its assigned id."""
        model = ProvisionAuditModel(
            resource_id=resource_id,
            actor=actor,
            action=action,
            status_before=status_before.value if status_before else None,
            status_after=status_after.value,
            details=details,
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_domain(model)

    async def list_for_resource(self, resource_id: str) -> list[ProvisionAudit]:
        """Ledger rows for a resource in the order they were written."""
        result = await self.session.execute(
            select(ProvisionAuditModel)
            .where(ProvisionAuditModel.resource_id == resource_id)
            .order_by(ProvisionAuditModel.id.asc())
        )
        return [self._to_domain(m) for m in result.scalars().all()]

    async def count_for_resource(self, resource_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ProvisionAuditModel)
            .where(ProvisionAuditModel.resource_id == resource_id)
        )
        return int(result.scalar_one())

    @staticmethod
    def _to_domain(model: ProvisionAuditModel) -> ProvisionAudit:
        return ProvisionAudit(
            id=model.id,
            resource_id=model.resource_id,
            actor=model.actor,
            action=model.action,
            status_before=ResourceStatus(model.status_before) if model.status_before else None,
            status_after=ResourceStatus(model.status_after),
            details=model.details or {},
            created_at=model.created_at,
        )
