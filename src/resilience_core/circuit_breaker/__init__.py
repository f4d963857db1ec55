"""Distributed async circuit breaker.

This package implements the circuit breaker pattern from *Release It!*, with
per-key state kept in a shared key-value store so that every worker process
sees the same breaker.

Key behavior notes:
  - Absence of stored state reads as ``CLOSED`` with zero counters. Closing a
    breaker deletes its fields rather than writing ``CLOSED``.
  - ``HALF_OPEN`` is persisted. Only ``can_request`` moves ``OPEN`` to
    ``HALF_OPEN``, once the reset timeout has elapsed; a caller that never
    asks will never see the breaker heal.
  - Any failure while ``HALF_OPEN`` re-opens the breaker with a fresh
    ``opened_at``. Failures while ``OPEN`` do not extend the open window.
  - Store failures fail open: requests are allowed and outcomes are dropped
    with a logged ``circuit_breaker.store_error`` event.
"""

from resilience_core.circuit_breaker.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
)
from resilience_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerStats, CircuitState
from resilience_core.circuit_breaker.storage import (
    AbstractKeyValueStore,
    InMemoryKeyValueStore,
)

__all__ = [
    "AbstractKeyValueStore",
    "BreakerListener",
    "BreakerStats",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryKeyValueStore",
]
