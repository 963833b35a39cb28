"""
Unified error taxonomy for the provisioner.

Every failure surfaced by the orchestrator maps onto one of these classes so
that callers can tell a provider-reported failure from a local contract
violation or an unavailable driver.

Exit Codes (CLI):
- 0: Success
- 2: Blocked (circuit open, state conflict)
- 10: Configuration error
- 11: Provider error (external service failure)
- 12: Contract violation
- 13: Credential error
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, TypeVar

import structlog

from provisioner.core.redaction import redact

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    BLOCKED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    CONTRACT_VIOLATION = 12
    CREDENTIAL_ERROR = 13
    UNKNOWN_ERROR = 127


class ProvisionerError(Exception):
    """Base exception for provisioner errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ProvisionerError):
    """Raised for configuration-related errors (unknown plan, bad driver config)."""

    exit_code = ExitCode.CONFIG_ERROR


class ProviderError(ProvisionerError):
    """Raised when an external provider fails."""

    exit_code = ExitCode.PROVIDER_ERROR


class TransientProviderError(ProviderError):
    """Timeouts, 5xx and rate limits. Retried by the backoff loop."""


class PermanentProviderError(ProviderError):
    """Explicit failure response or invalid spec. Never retried automatically."""


class ContractViolation(ProvisionerError):
    """A caller asked for something the contract does not allow."""

    exit_code = ExitCode.CONTRACT_VIOLATION


class InvalidTransition(ContractViolation):
    """Requested lifecycle move is not in the transition table."""


class UnsupportedCapability(ContractViolation):
    """Driver does not declare the capability being invoked."""


class WebhookVerificationError(ContractViolation):
    """Webhook signature or timestamp failed verification."""


class ResourceNotFound(ProvisionerError):
    """No resource with the requested id or order."""

    exit_code = ExitCode.BLOCKED


class StateConflictError(ProvisionerError):
    """Operator action is not legal for the resource's current status."""

    exit_code = ExitCode.BLOCKED


class CircuitOpenError(ProvisionerError):
    """Driver unavailable: the breaker rejected the call without a network attempt."""

    exit_code = ExitCode.BLOCKED

    def __init__(self, driver: str, retry_after: float) -> None:
        super().__init__(
            f"Driver '{driver}' is unavailable",
            {"driver": driver, "retry_after": round(retry_after, 3)},
        )
        self.driver = driver
        self.retry_after = retry_after


class CredentialError(ProvisionerError):
    """Missing or undecryptable provider secret."""

    exit_code = ExitCode.CREDENTIAL_ERROR


class AuditLedgerViolation(ProvisionerError):
    """Attempt to update or delete an audit row."""

    exit_code = ExitCode.CONTRACT_VIOLATION


class IdempotencyConflict(ProvisionerError):
    """Raised when an idempotent operation has already been processed."""


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Usage:
        @main_with_error_handling()
        def my_command() -> int:
            return 0

    Exit codes:
        - ProvisionerError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except ProvisionerError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        details=redact(e.details),
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: ProvisionerError) -> str:
    """Format an error for display to users and for ``last_error`` fields."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in redact(error.details).items())
        msg = f"{msg} ({detail_str})"
    return msg


MAX_ERROR_LENGTH = 500


def summarize_error(error: BaseException | str) -> str:
    """Secret-free, bounded ``last_error`` text for any failure."""
    if isinstance(error, ProvisionerError):
        text = format_error_message(error)
    elif isinstance(error, BaseException):
        text = f"{type(error).__name__}: unexpected driver error"
    else:
        text = error
    return text[:MAX_ERROR_LENGTH]
