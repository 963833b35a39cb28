"""Append-only audit ledger for resource lifecycle transitions."""

from provisioner.audit.ledger import AuditLedger
from provisioner.audit.repository import AuditRepository

__all__ = ["AuditLedger", "AuditRepository"]
