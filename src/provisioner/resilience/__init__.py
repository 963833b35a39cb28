"""Failure isolation for outbound provider calls."""

from provisioner.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)

__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitState", "CircuitStatus"]
