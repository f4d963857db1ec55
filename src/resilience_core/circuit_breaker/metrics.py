"""Observability hooks for circuit breakers."""

from typing import Protocol

from resilience_core.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events.

    Notes:
        ``on_state_change`` fires only for the caller that won the stored
        transition, so a fleet of workers reports each transition once.
    """

    async def on_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle circuit state transitions."""

    async def on_request_rejected(self, key: str) -> None:
        """Handle a request rejected while the circuit is open."""
