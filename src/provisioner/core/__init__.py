"""Core primitives shared across the provisioner."""

from provisioner.core.errors import (
    AuditLedgerViolation,
    CircuitOpenError,
    ConfigurationError,
    ContractViolation,
    CredentialError,
    ExitCode,
    IdempotencyConflict,
    InvalidTransition,
    PermanentProviderError,
    ProviderError,
    ProvisionerError,
    ResourceNotFound,
    StateConflictError,
    TransientProviderError,
    UnsupportedCapability,
    WebhookVerificationError,
    format_error_message,
    main_with_error_handling,
    summarize_error,
)

__all__ = [
    "AuditLedgerViolation",
    "CircuitOpenError",
    "ConfigurationError",
    "ContractViolation",
    "CredentialError",
    "ExitCode",
    "IdempotencyConflict",
    "InvalidTransition",
    "PermanentProviderError",
    "ProviderError",
    "ProvisionerError",
    "ResourceNotFound",
    "StateConflictError",
    "TransientProviderError",
    "UnsupportedCapability",
    "WebhookVerificationError",
    "format_error_message",
    "main_with_error_handling",
    "summarize_error",
]
