"""Masking helpers shared by logging, error reporting and the audit ledger."""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from typing import Any

MASK = "***"

SENSITIVE_MARKERS = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "signature",
)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping keys masked.

    Nested mappings and lists are walked. Non-container values are returned
    untouched.
    """
    if isinstance(value, Mapping):
        return {
            key: MASK if isinstance(key, str) and is_sensitive_key(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def fingerprint(value: str) -> str:
    """Stable short digest used in place of provider-assigned identifiers."""
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"sha256:{digest[:16]}"

