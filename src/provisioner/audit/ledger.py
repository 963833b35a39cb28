"""
Append-only audit ledger.

Every accepted lifecycle transition produces exactly one row, written in the
same transaction as the status change. Unlike fire-and-forget audit trails the
ledger is not fail-open: if the row cannot be written the status change must
not commit either.
"""

from __future__ import annotations

from typing import Any, Mapping

import structlog

from provisioner.audit.repository import AuditRepository
from provisioner.core.redaction import fingerprint, redact
from provisioner.domain.models import ProvisionAudit, ResourceStatus
from provisioner.lifecycle import AuditEntry

logger = structlog.get_logger()

PROVIDER_ID_KEYS = frozenset({"provider_ref", "provider_task_id", "provider_resource_id"})


class AuditLedger:
    """Records lifecycle transitions for compliance review."""

    def __init__(self, repository: AuditRepository, *, hash_provider_ids: bool = True) -> None:
        self.repository = repository
        self.hash_provider_ids = hash_provider_ids

    async def record(
        self,
        resource_id: str,
        actor: str,
        action: str,
        before: ResourceStatus | None,
        after: ResourceStatus,
        metadata: Mapping[str, Any] | None = None,
    ) -> ProvisionAudit:
        row = await self.repository.append(
            resource_id=resource_id,
            actor=actor,
            action=action,
            status_before=before,
            status_after=after,
            details=self.sanitize(metadata or {}),
        )
        logger.info(
            "transition_recorded",
            resource_id=resource_id,
            audit_id=row.id,
            action=action,
            before=before.value if before else None,
            after=after.value,
        )
        return row

    async def record_entry(self, resource_id: str, entry: AuditEntry) -> ProvisionAudit:
        return await self.record(
            resource_id,
            entry.actor,
            entry.action,
            entry.status_before,
            entry.status_after,
            entry.metadata,
        )

    async def history(self, resource_id: str) -> list[ProvisionAudit]:
        return await self.repository.list_for_resource(resource_id)

    def sanitize(self, metadata: Mapping[str, Any]) -> dict[str, Any]:
        """Mask secrets and, when enabled, hash provider-assigned identifiers."""
        cleaned: dict[str, Any] = redact(dict(metadata))
        if self.hash_provider_ids:
            for key in PROVIDER_ID_KEYS & cleaned.keys():
                if cleaned[key]:
                    cleaned[key] = fingerprint(str(cleaned[key]))
        return cleaned
