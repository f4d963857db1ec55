from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Generic, TypeVar

from resilience_core.backoff import MAX_BASE_DELAY_MS, MAX_DELAY_CAP_MS

T = TypeVar("T")

MAX_RETRIES = 10
MAX_ATTEMPT_TIMEOUT_MS = 120_000


def is_success_status(status_code: int | None) -> bool:
    """Return true for 2xx status codes."""
    return status_code is not None and 200 <= status_code < 300


@dataclass(frozen=True)
class HttpCallResult(Generic[T]):
    """Normalized outcome every wrapped operation must return.

    ``status_code`` is ``None`` only for failures where no response was
    received (transport errors, timeouts).
    """

    success: bool
    status_code: int | None = None
    data: T | None = None
    retry_after_seconds: float | None = None
    error: BaseException | None = None

    def __post_init__(self) -> None:
        if self.success != is_success_status(self.status_code):
            raise ValueError(
                f"success={self.success} does not match status_code={self.status_code}"
            )

    @classmethod
    def ok(cls, data: T | None = None, *, status_code: int = 200) -> HttpCallResult[T]:
        """Build a successful result."""
        return cls(success=True, status_code=status_code, data=data)

    @classmethod
    def failure(
        cls,
        status_code: int | None,
        *,
        error: BaseException | None = None,
        retry_after_seconds: float | None = None,
    ) -> HttpCallResult[T]:
        """Build a failed result."""
        return cls(
            success=False,
            status_code=status_code,
            error=error,
            retry_after_seconds=retry_after_seconds,
        )


@dataclass(frozen=True)
class RetryContext:
    """Correlation metadata forwarded verbatim into logs, results and events."""

    service: str
    operation: str
    metadata: Mapping[str, object] | None = None
    campaign_id: str | None = None
    poll_instance_id: str | None = None
    streamer_id: str | None = None

    def __post_init__(self) -> None:
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def as_log_fields(self) -> dict[str, object]:
        """Return non-empty correlation fields for structured logging."""
        fields: dict[str, object] = {
            "service": self.service,
            "operation": self.operation,
            "campaign_id": self.campaign_id,
            "poll_instance_id": self.poll_instance_id,
            "streamer_id": self.streamer_id,
        }
        return {key: value for key, value in fields.items() if value is not None}


@dataclass(frozen=True)
class RetryOptions:
    """Retry and circuit-breaker policy for one logical operation.

    Attributes:
        max_retries: Retries after the initial attempt.
        base_delay_ms: Base delay for backoff calculation.
        max_delay_ms: Upper bound for any single delay.
        use_exponential_backoff: Exponential with jitter when true, progressive
            doubling otherwise.
        retryable_errors: Status codes worth retrying.
        attempt_timeout_ms: Optional bound on a single attempt.
        circuit_breaker_key: Optional breaker key guarding the operation.
        context: Optional correlation metadata.
    """

    max_retries: int
    base_delay_ms: int
    max_delay_ms: int
    use_exponential_backoff: bool
    retryable_errors: frozenset[int] = field(default_factory=frozenset)
    attempt_timeout_ms: int | None = None
    circuit_breaker_key: str | None = None
    context: RetryContext | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "retryable_errors",
            frozenset(_as_status_codes(self.retryable_errors)),
        )
        if self.max_retries < 0 or self.max_retries > MAX_RETRIES:
            raise ValueError(f"max_retries must be between 0 and {MAX_RETRIES}")
        if self.base_delay_ms < 0 or self.base_delay_ms > MAX_BASE_DELAY_MS:
            raise ValueError(
                f"base_delay_ms must be between 0 and {MAX_BASE_DELAY_MS}"
            )
        if self.max_delay_ms < 0 or self.max_delay_ms > MAX_DELAY_CAP_MS:
            raise ValueError(f"max_delay_ms must be between 0 and {MAX_DELAY_CAP_MS}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.attempt_timeout_ms is not None and not (
            0 < self.attempt_timeout_ms <= MAX_ATTEMPT_TIMEOUT_MS
        ):
            raise ValueError(
                f"attempt_timeout_ms must be between 1 and {MAX_ATTEMPT_TIMEOUT_MS}"
            )
        if self.circuit_breaker_key is not None and not self.circuit_breaker_key.strip():
            raise ValueError("circuit_breaker_key must be non-empty")

    @property
    def max_attempts(self) -> int:
        """Retry budget: the initial attempt plus ``max_retries``."""
        return self.max_retries + 1

    def is_retryable(self, status_code: int | None) -> bool:
        """Return whether a failed attempt with ``status_code`` may be retried.

        Failures without a status code (transport errors, timeouts) are always
        retryable.
        """
        return status_code is None or status_code in self.retryable_errors

    def with_context(self, context: RetryContext) -> RetryOptions:
        """Return a copy of these options bound to ``context``."""
        return replace(self, context=context)


def _as_status_codes(values: Iterable[int]) -> Iterable[int]:
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"retryable_errors must contain ints, got {value!r}")
        yield value


@dataclass(frozen=True)
class AttemptDetail:
    """Record of one attempt (``attempt`` is 1-indexed)."""

    attempt: int
    delay_ms: int
    duration_ms: int
    timestamp: datetime
    used_retry_after: bool = False
    status_code: int | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping of this attempt."""
        return {
            "attempt": self.attempt,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "delay_ms": self.delay_ms,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "used_retry_after": self.used_retry_after,
        }


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of one retry-wrapped operation."""

    success: bool
    attempts: int
    total_duration_ms: int
    circuit_breaker_open: bool = False
    attempt_details: tuple[AttemptDetail, ...] = ()
    data: T | None = None
    error: BaseException | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "attempt_details", tuple(self.attempt_details))
        if self.circuit_breaker_open:
            if self.attempts != 0 or self.attempt_details:
                raise ValueError("short-circuited results must have no attempts")
        elif self.attempts != len(self.attempt_details):
            raise ValueError("attempts must equal the number of attempt details")

    @property
    def final_status_code(self) -> int | None:
        """Status code of the last attempt, if any."""
        if not self.attempt_details:
            return None
        return self.attempt_details[-1].status_code
