"""Core circuit breaker implementation."""

import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import ParamSpec, TypeVar

from resilience_core.circuit_breaker.exceptions import CircuitOpenError
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerStats, CircuitState
from resilience_core.circuit_breaker.storage import (
    AbstractKeyValueStore,
    InMemoryKeyValueStore,
)
from resilience_core.logging import (
    AnyLogger,
    get_logger,
    log_error,
    log_info,
    log_warning,
)

T = TypeVar("T")
P = ParamSpec("P")

DEFAULT_KEY_PREFIX = "circuit:"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Failures required while ``CLOSED`` before opening.
        reset_timeout_ms: Milliseconds to stay ``OPEN`` before allowing a probe.
        success_threshold: Successes required while ``HALF_OPEN`` to close.
        failure_ttl_seconds: Lifetime of the failure counter after the last
            recorded failure.
    """

    failure_threshold: int = 5
    reset_timeout_ms: int = 30_000
    success_threshold: int = 2
    failure_ttl_seconds: int = 60

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout_ms < 1:
            raise ValueError("reset_timeout_ms must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.failure_ttl_seconds < 1:
            raise ValueError("failure_ttl_seconds must be >= 1")


class CircuitBreaker:
    """Per-key circuit breaker whose state lives in a shared key-value store.

    One instance serves any number of keys; every key has an independent
    record. All transitions are done with atomic store primitives so that
    workers sharing the store agree on state without talking to each other.
    """

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        store: AbstractKeyValueStore | None = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        listeners: Sequence[BreakerListener] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            store: Shared state store. Defaults to an in-memory store.
            key_prefix: Prefix for every stored field.
            listeners: Optional listener hooks for breaker events.
            logger: Structured logger. Defaults to the module logger.
        """
        self.config = CircuitBreakerConfig() if config is None else config
        self._store = InMemoryKeyValueStore() if store is None else store
        self._prefix = key_prefix
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = get_logger(__name__) if logger is None else logger

    def _field(self, key: str, name: str) -> str:
        return f"{self._prefix}{key}:{name}"

    def _fields(self, key: str) -> tuple[str, str, str, str]:
        return (
            self._field(key, "state"),
            self._field(key, "failures"),
            self._field(key, "successes"),
            self._field(key, "opened_at"),
        )

    async def _emit_state_change(
        self, key: str, old: CircuitState, new: CircuitState
    ) -> None:
        for listener in self._listeners:
            try:
                await listener.on_state_change(key, old, new)
            except Exception:
                continue

    async def _emit_request_rejected(self, key: str) -> None:
        for listener in self._listeners:
            try:
                await listener.on_request_rejected(key)
            except Exception:
                continue

    async def _read_state(self, key: str) -> CircuitState:
        raw = await self._store.get(self._field(key, "state"))
        if raw is None:
            return CircuitState.CLOSED
        try:
            return CircuitState(raw)
        except ValueError:
            log_warning(
                self._logger,
                "circuit_breaker.unknown_state",
                key=key,
                stored=raw,
            )
            return CircuitState.CLOSED

    async def _read_int(self, key: str, name: str) -> int | None:
        raw = await self._store.get(self._field(key, name))
        if raw is None:
            return None
        return int(raw)

    async def get_state(self, key: str) -> CircuitState:
        """Return the stored state for ``key``.

        Missing state reads as ``CLOSED``; so does a store failure, so a broken
        store never blocks traffic. This does not perform the time-based
        ``OPEN`` -> ``HALF_OPEN`` transition.
        """
        try:
            return await self._read_state(key)
        except Exception as exc:
            log_warning(
                self._logger,
                "circuit_breaker.store_error",
                key=key,
                operation="get_state",
                error=repr(exc),
            )
            return CircuitState.CLOSED

    async def can_request(self, key: str) -> bool:
        """Return whether a request for ``key`` may proceed.

        ``CLOSED`` and ``HALF_OPEN`` always allow. ``OPEN`` allows once the
        reset timeout has elapsed, moving the stored state to ``HALF_OPEN``.
        Store failures fail open.
        """
        try:
            state = await self._read_state(key)
            if state != CircuitState.OPEN:
                return True

            opened_at = await self._read_int(key, "opened_at")
            elapsed = None if opened_at is None else _now_ms() - opened_at
            if elapsed is not None and elapsed < self.config.reset_timeout_ms:
                await self._emit_request_rejected(key)
                return False

            state_field, _, successes_field, _ = self._fields(key)
            transitioned = await self._store.compare_and_set(
                state_field,
                CircuitState.OPEN.value,
                CircuitState.HALF_OPEN.value,
                updates={successes_field: None},
            )
            if transitioned:
                log_info(
                    self._logger,
                    "circuit_breaker.half_open",
                    key=key,
                    success_threshold=self.config.success_threshold,
                )
                await self._emit_state_change(
                    key, CircuitState.OPEN, CircuitState.HALF_OPEN
                )
            return True
        except Exception as exc:
            log_warning(
                self._logger,
                "circuit_breaker.store_error",
                key=key,
                operation="can_request",
                error=repr(exc),
            )
            return True

    async def _open(self, key: str, previous: CircuitState) -> bool:
        state_field, _, successes_field, opened_at_field = self._fields(key)
        expected = None if previous == CircuitState.CLOSED else previous.value
        opened = await self._store.compare_and_set(
            state_field,
            expected,
            CircuitState.OPEN.value,
            updates={opened_at_field: str(_now_ms()), successes_field: None},
        )
        if not opened:
            return False
        log_error(
            self._logger,
            "circuit_breaker.opened",
            key=key,
            previous_state=previous.value,
            reset_timeout_ms=self.config.reset_timeout_ms,
        )
        await self._emit_state_change(key, previous, CircuitState.OPEN)
        return True

    async def record_failure(self, key: str) -> None:
        """Record one failed call for ``key``.

        ``CLOSED`` counts towards the failure threshold, ``HALF_OPEN`` re-opens
        immediately, ``OPEN`` is left untouched.
        """
        try:
            state = await self._read_state(key)
            if state == CircuitState.OPEN:
                return
            if state == CircuitState.HALF_OPEN:
                await self._open(key, CircuitState.HALF_OPEN)
                return

            failures_field = self._field(key, "failures")
            failures = await self._store.incr(failures_field)
            await self._store.expire(failures_field, self.config.failure_ttl_seconds)
            log_warning(
                self._logger,
                "circuit_breaker.failure_recorded",
                key=key,
                failures=failures,
                threshold=self.config.failure_threshold,
            )
            if failures >= self.config.failure_threshold:
                await self._open(key, CircuitState.CLOSED)
        except Exception as exc:
            log_error(
                self._logger,
                "circuit_breaker.store_error",
                key=key,
                operation="record_failure",
                error=repr(exc),
            )

    async def record_success(self, key: str) -> None:
        """Record one successful call for ``key``.

        ``CLOSED`` clears the failure counter, ``HALF_OPEN`` counts towards the
        success threshold, ``OPEN`` is left untouched.
        """
        try:
            state = await self._read_state(key)
            state_field, failures_field, successes_field, opened_at_field = (
                self._fields(key)
            )
            if state == CircuitState.CLOSED:
                await self._store.delete(failures_field)
                return
            if state == CircuitState.OPEN:
                return

            successes = await self._store.incr(successes_field)
            log_info(
                self._logger,
                "circuit_breaker.half_open_success",
                key=key,
                successes=successes,
                threshold=self.config.success_threshold,
            )
            if successes < self.config.success_threshold:
                return

            closed = await self._store.compare_and_set(
                state_field,
                CircuitState.HALF_OPEN.value,
                None,
                updates={
                    failures_field: None,
                    successes_field: None,
                    opened_at_field: None,
                },
            )
            if closed:
                log_info(self._logger, "circuit_breaker.closed", key=key)
                await self._emit_state_change(
                    key, CircuitState.HALF_OPEN, CircuitState.CLOSED
                )
        except Exception as exc:
            log_error(
                self._logger,
                "circuit_breaker.store_error",
                key=key,
                operation="record_success",
                error=repr(exc),
            )

    async def reset(self, key: str) -> None:
        """Force ``key`` back to ``CLOSED`` with zero counters."""
        previous = await self._read_state(key)
        await self._store.delete(*self._fields(key))
        log_info(
            self._logger,
            "circuit_breaker.reset",
            key=key,
            previous_state=previous.value,
        )
        if previous != CircuitState.CLOSED:
            await self._emit_state_change(key, previous, CircuitState.CLOSED)

    async def get_stats(self, key: str) -> BreakerStats:
        """Return a read-only snapshot of ``key``."""
        return BreakerStats(
            key=key,
            state=await self._read_state(key),
            failures=await self._read_int(key, "failures") or 0,
            successes=await self._read_int(key, "successes") or 0,
            opened_at=await self._read_int(key, "opened_at"),
        )

    async def _seconds_until_probe(self, key: str) -> float | None:
        try:
            opened_at = await self._read_int(key, "opened_at")
        except Exception:
            return None
        if opened_at is None:
            return None
        remaining_ms = self.config.reset_timeout_ms - (_now_ms() - opened_at)
        return max(remaining_ms, 0) / 1000

    async def call(
        self,
        key: str,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under protection of breaker ``key``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func`` when it fails.
        """
        if not await self.can_request(key):
            raise CircuitOpenError(key, retry_after=await self._seconds_until_probe(key))

        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self.record_failure(key)
            raise
        await self.record_success(key)
        return result
