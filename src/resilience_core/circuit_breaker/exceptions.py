"""Circuit breaker exceptions.

Callers can distinguish between:
  - A call being rejected because the circuit is open.
"""

from resilience_core.errors import ResilienceError


class CircuitBreakerError(ResilienceError):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """Raised or reported when a call is short-circuited by an open breaker.

    Attributes:
        breaker_key: Key of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted, when known.
    """

    def __init__(self, breaker_key: str, retry_after: float | None = None) -> None:
        """Initialize a circuit-open exception payload.

        Args:
            breaker_key: Breaker rejecting the call.
            retry_after: Seconds until the next probe window opens.
        """
        self.breaker_key = breaker_key
        self.retry_after = retry_after
        message = f"circuit_open: {breaker_key}"
        if retry_after is not None:
            message = f"{message} retry_after={retry_after:g}s"
        super().__init__(message)
