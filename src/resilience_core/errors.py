"""Shared error types for resilience_core."""

from __future__ import annotations


class ResilienceError(Exception):
    """Base exception for the resilience layer."""


class AttemptTimeoutError(ResilienceError, TimeoutError):
    """Raised when a single attempt exceeds its configured timeout."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"attempt_timeout: exceeded {timeout_ms}ms")


class HttpStatusError(ResilienceError):
    """Non-2xx response reported by a wrapped HTTP operation."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RetryOutcomeError(ResilienceError):
    """Base for failures reported in a ``RetryResult``.

    Attributes:
        attempts: Attempts made before giving up.
        status_code: Status code of the final attempt, if any.
        last_error: Error reported by the final attempt, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        status_code: int | None = None,
        last_error: BaseException | None = None,
    ) -> None:
        self.attempts = attempts
        self.status_code = status_code
        self.last_error = last_error
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.__cause__ = last_error


class NonRetryableError(RetryOutcomeError):
    """The final status code is outside the configured retryable set."""

    def __init__(
        self,
        *,
        attempts: int,
        status_code: int | None,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"non_retryable: status={status_code}",
            attempts=attempts,
            status_code=status_code,
            last_error=last_error,
        )


class ExhaustedRetriesError(RetryOutcomeError):
    """Every attempt in the retry budget failed."""

    def __init__(
        self,
        *,
        attempts: int,
        status_code: int | None,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"retries_exhausted: attempts={attempts} status={status_code}",
            attempts=attempts,
            status_code=status_code,
            last_error=last_error,
        )
