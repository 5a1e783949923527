"""Fallback provider circuit breaker."""

from .breaker import (
    CircuitState,
    FailureClassification,
    FallbackCircuitBreaker,
    FallbackStats,
    classify_failure,
    compute_backoff,
)

__all__ = [
    "CircuitState",
    "FailureClassification",
    "FallbackCircuitBreaker",
    "FallbackStats",
    "classify_failure",
    "compute_backoff",
]
