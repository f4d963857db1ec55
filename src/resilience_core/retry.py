from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
)

from resilience_core.backoff import BackoffStrategy, resolve_retry_after
from resilience_core.circuit_breaker import CircuitBreaker, CircuitOpenError
from resilience_core.errors import (
    AttemptTimeoutError,
    ExhaustedRetriesError,
    NonRetryableError,
)
from resilience_core.events import AbstractRetryEventStore
from resilience_core.logging import (
    AnyLogger,
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
from resilience_core.models import (
    AttemptDetail,
    HttpCallResult,
    RetryOptions,
    RetryResult,
)

T = TypeVar("T")

Operation = Callable[[], Awaitable[HttpCallResult[T]]]
Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _elapsed_ms(started: float) -> int:
    return max(int((time.monotonic() - started) * 1000), 0)


def _last_result(retry_state: RetryCallState) -> Any:
    outcome = retry_state.outcome
    if outcome is None:
        raise RuntimeError("retry state has no outcome")
    return outcome.result()


def build_attempt_retrying(
    *,
    should_retry: Callable[[Any], bool],
    max_attempts: int,
    wait: Callable[[RetryCallState], float],
    sleep: Sleep,
    before_sleep: Callable[[RetryCallState], None],
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` that retries on returned results.

    When the attempt budget runs out the last result is returned instead of
    raising ``tenacity.RetryError``.
    """
    return AsyncRetrying(
        retry=retry_if_result(should_retry),
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        sleep=sleep,
        before_sleep=before_sleep,
        retry_error_callback=_last_result,
    )


class _RetryRun(Generic[T]):
    """Per-call state for one ``RetryExecutor.run`` invocation."""

    def __init__(
        self,
        *,
        operation: Operation[T],
        options: RetryOptions,
        backoff: BackoffStrategy,
        circuit_breaker: CircuitBreaker,
        logger: AnyLogger,
    ) -> None:
        self._operation = operation
        self._options = options
        self._backoff = backoff
        self._circuit_breaker = circuit_breaker
        self._logger = logger
        self.details: list[AttemptDetail] = []
        self.last_result: HttpCallResult[T] | None = None
        self._next_delay_ms = 0
        self._next_used_retry_after = False

    @property
    def log_fields(self) -> dict[str, object]:
        fields: dict[str, object] = {}
        if self._options.context is not None:
            fields["context"] = self._options.context.as_log_fields()
        if self._options.circuit_breaker_key is not None:
            fields["circuit_breaker_key"] = self._options.circuit_breaker_key
        return fields

    def should_retry(self, result: HttpCallResult[T]) -> bool:
        return not result.success and self._options.is_retryable(result.status_code)

    def wait(self, retry_state: RetryCallState) -> float:
        retry_after = None
        if self.last_result is not None:
            retry_after = self.last_result.retry_after_seconds
        # Exponent is the 1-indexed number of the attempt that just failed.
        delay_ms = self._backoff.calculate(
            retry_state.attempt_number,
            self._options.base_delay_ms,
            self._options.max_delay_ms,
            self._options.use_exponential_backoff,
            retry_after,
        )
        self._next_delay_ms = round(delay_ms)
        self._next_used_retry_after = resolve_retry_after(retry_after) is not None
        return self._next_delay_ms / 1000

    def before_sleep(self, retry_state: RetryCallState) -> None:
        log_info(
            self._logger,
            "retry.waiting",
            attempt=retry_state.attempt_number + 1,
            max_attempts=self._options.max_attempts,
            delay_ms=self._next_delay_ms,
            used_retry_after=self._next_used_retry_after,
            **self.log_fields,
        )

    async def _invoke(self) -> HttpCallResult[T]:
        timeout_ms = self._options.attempt_timeout_ms
        try:
            if timeout_ms is None:
                return await self._operation()
            try:
                return await asyncio.wait_for(
                    self._operation(), timeout=timeout_ms / 1000
                )
            except TimeoutError:
                return HttpCallResult.failure(
                    None, error=AttemptTimeoutError(timeout_ms)
                )
        except Exception as exc:
            return HttpCallResult.failure(None, error=exc)

    async def attempt(self) -> HttpCallResult[T]:
        number = len(self.details) + 1
        delay_ms = self._next_delay_ms
        used_retry_after = self._next_used_retry_after
        self._next_delay_ms = 0
        self._next_used_retry_after = False

        timestamp = _utcnow()
        started = time.monotonic()
        result = await self._invoke()
        duration_ms = _elapsed_ms(started)

        key = self._options.circuit_breaker_key
        if key is not None:
            if result.success:
                await self._circuit_breaker.record_success(key)
            else:
                await self._circuit_breaker.record_failure(key)

        self.details.append(
            AttemptDetail(
                attempt=number,
                status_code=result.status_code,
                error_message=None if result.error is None else str(result.error),
                delay_ms=delay_ms,
                duration_ms=duration_ms,
                timestamp=timestamp,
                used_retry_after=used_retry_after,
            )
        )
        self.last_result = result

        if not result.success:
            log_warning(
                self._logger,
                "retry.attempt_failed",
                attempt=number,
                status_code=result.status_code,
                error=None if result.error is None else str(result.error),
                will_retry=(
                    self.should_retry(result) and number < self._options.max_attempts
                ),
                **self.log_fields,
            )
        return result


class RetryExecutor:
    """Run operations to completion under a retry and circuit-breaker policy.

    The executor never raises for expected failures: every call returns a
    ``RetryResult``. Completed results are handed to the event store as
    detached tasks whose failures are logged and dropped.
    """

    def __init__(
        self,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        event_store: AbstractRetryEventStore | None = None,
        backoff: BackoffStrategy | None = None,
        sleep: Sleep | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build an executor with optional custom dependencies.

        Args:
            circuit_breaker: Breaker consulted when options carry a key.
                Defaults to a breaker over an in-memory store.
            event_store: Analytics sink. Nothing is persisted when omitted.
            backoff: Delay calculator. Defaults to ``BackoffStrategy()``.
            sleep: Awaitable sleep taking seconds. Defaults to ``asyncio.sleep``.
            logger: Structured logger. Defaults to the module logger.
        """
        self._logger = get_logger(__name__) if logger is None else logger
        self._circuit_breaker = (
            CircuitBreaker(logger=self._logger)
            if circuit_breaker is None
            else circuit_breaker
        )
        self._event_store = event_store
        self._backoff = BackoffStrategy() if backoff is None else backoff
        self._sleep: Sleep = asyncio.sleep if sleep is None else sleep
        self._pending_events: set[asyncio.Task[None]] = set()

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def event_store(self) -> AbstractRetryEventStore | None:
        return self._event_store

    async def run(
        self,
        operation: Operation[T],
        options: RetryOptions,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails terminally or runs out.

        Args:
            operation: Zero-argument coroutine factory returning an
                ``HttpCallResult``. Called once per attempt.
            options: Retry policy for this call.

        Returns:
            The aggregated ``RetryResult``.
        """
        started = time.monotonic()
        run: _RetryRun[T] = _RetryRun(
            operation=operation,
            options=options,
            backoff=self._backoff,
            circuit_breaker=self._circuit_breaker,
            logger=self._logger,
        )

        key = options.circuit_breaker_key
        if key is not None and not await self._circuit_breaker.can_request(key):
            log_warning(self._logger, "retry.circuit_open", **run.log_fields)
            rejected: RetryResult[T] = RetryResult(
                success=False,
                attempts=0,
                total_duration_ms=0,
                circuit_breaker_open=True,
                error=CircuitOpenError(key),
            )
            self._schedule_event(rejected, options)
            return rejected

        retrying = build_attempt_retrying(
            should_retry=run.should_retry,
            max_attempts=options.max_attempts,
            wait=run.wait,
            sleep=self._sleep,
            before_sleep=run.before_sleep,
        )
        final: HttpCallResult[T] = await retrying(run.attempt)
        result = self._build_result(run, final, _elapsed_ms(started), options)
        self._schedule_event(result, options)
        return result

    def _build_result(
        self,
        run: _RetryRun[T],
        final: HttpCallResult[T],
        total_duration_ms: int,
        options: RetryOptions,
    ) -> RetryResult[T]:
        attempts = len(run.details)
        if final.success:
            log_info(
                self._logger,
                "retry.succeeded",
                attempts=attempts,
                total_duration_ms=total_duration_ms,
                **run.log_fields,
            )
            return RetryResult(
                success=True,
                data=final.data,
                attempts=attempts,
                total_duration_ms=total_duration_ms,
                attempt_details=tuple(run.details),
            )

        error: NonRetryableError | ExhaustedRetriesError
        if options.is_retryable(final.status_code):
            error = ExhaustedRetriesError(
                attempts=attempts,
                status_code=final.status_code,
                last_error=final.error,
            )
            log_error(
                self._logger,
                "retry.exhausted",
                attempts=attempts,
                status_code=final.status_code,
                total_duration_ms=total_duration_ms,
                error=str(error),
                **run.log_fields,
            )
        else:
            error = NonRetryableError(
                attempts=attempts,
                status_code=final.status_code,
                last_error=final.error,
            )
            log_warning(
                self._logger,
                "retry.non_retryable",
                attempts=attempts,
                status_code=final.status_code,
                error=str(error),
                **run.log_fields,
            )
        return RetryResult(
            success=False,
            error=error,
            attempts=attempts,
            total_duration_ms=total_duration_ms,
            attempt_details=tuple(run.details),
        )

    def _schedule_event(self, result: RetryResult[T], options: RetryOptions) -> None:
        if self._event_store is None:
            return
        task = asyncio.create_task(
            self._store_event(self._event_store, result, options),
            name="retry-event-store",
        )
        self._pending_events.add(task)
        task.add_done_callback(self._pending_events.discard)

    async def _store_event(
        self,
        event_store: AbstractRetryEventStore,
        result: RetryResult[T],
        options: RetryOptions,
    ) -> None:
        context = options.context
        try:
            await event_store.store_from_result(
                result,
                service="unknown" if context is None else context.service,
                operation="unknown" if context is None else context.operation,
                circuit_breaker_key=options.circuit_breaker_key,
                metadata=None if context is None else context.metadata,
                streamer_id=None if context is None else context.streamer_id,
                campaign_id=None if context is None else context.campaign_id,
                poll_instance_id=(
                    None if context is None else context.poll_instance_id
                ),
            )
        except Exception as exc:
            log_exception(
                self._logger,
                "retry.event_store_failed",
                error=repr(exc),
                success=result.success,
                attempts=result.attempts,
            )

    async def drain(self) -> None:
        """Wait for every pending event write to finish."""
        while self._pending_events:
            await asyncio.gather(*tuple(self._pending_events), return_exceptions=True)
