"""Circuit breaker state primitives."""

from dataclasses import dataclass
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values as persisted in the shared store."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerStats:
    """Point-in-time view of one breaker key, for metrics and logging.

    Attributes:
        key: Breaker key.
        state: Stored breaker state (``CLOSED`` when nothing is stored).
        failures: Failures counted while ``CLOSED``.
        successes: Successes counted while ``HALF_OPEN``.
        opened_at: Epoch milliseconds when the breaker last opened, if any.
    """

    key: str
    state: CircuitState
    failures: int
    successes: int
    opened_at: int | None
