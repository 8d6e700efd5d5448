"""
Resilience patterns module.

Provides fault tolerance primitives shared by the connection manager,
the group coordinator and the consumer:
    - RetryConfig / retry_async: exponential backoff
    - CircuitBreaker / CircuitBreakerRegistry: per-node fast-fail
"""

from core.resilience.circuit_breaker import (
    BROKER_CIRCUIT_CONFIG,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from core.resilience.retry import DEFAULT_RETRY, RetryConfig, retry_async

__all__ = [
    "BROKER_CIRCUIT_CONFIG",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DEFAULT_RETRY",
    "RetryConfig",
    "retry_async",
]
