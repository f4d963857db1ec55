from __future__ import annotations

from collections.abc import Sequence
from types import TracebackType

from resilience_core.circuit_breaker import (
    AbstractKeyValueStore,
    BreakerListener,
    CircuitBreaker,
    InMemoryKeyValueStore,
)
from resilience_core.circuit_breaker.integrations.redis.store import (
    RedisKeyValueStore,
)
from resilience_core.events import AbstractRetryEventStore, InMemoryRetryEventStore
from resilience_core.logging import AnyLogger, get_logger, log_info
from resilience_core.retry import RetryExecutor, Sleep
from resilience_core.settings import ResilienceSettings


class ResilienceRuntime:
    """Explicitly owned set of resilience components for one process.

    Build it once at startup and pass ``executor`` (or ``circuit_breaker``) to
    every consumer; close it at shutdown so pending event writes finish and the
    shared store connection is released.
    """

    def __init__(
        self,
        *,
        settings: ResilienceSettings,
        store: AbstractKeyValueStore,
        circuit_breaker: CircuitBreaker,
        event_store: AbstractRetryEventStore,
        executor: RetryExecutor,
        logger: AnyLogger,
    ) -> None:
        self.settings = settings
        self.store = store
        self.circuit_breaker = circuit_breaker
        self.event_store = event_store
        self.executor = executor
        self._logger = logger
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        *,
        store: AbstractKeyValueStore | None = None,
        event_store: AbstractRetryEventStore | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        sleep: Sleep | None = None,
        logger: AnyLogger | None = None,
    ) -> ResilienceRuntime:
        """Wire every component from ``settings``.

        Args:
            settings: Resolved resilience settings.
            store: Shared key-value store. Defaults to Redis when
                ``settings.redis_url`` is set, in-memory otherwise.
            event_store: Analytics sink. Defaults to in-memory.
            listeners: Breaker listener hooks.
            sleep: Sleep override for the executor.
            logger: Structured logger shared by every component.
        """
        resolved_logger = get_logger(__name__) if logger is None else logger
        if store is None:
            if settings.redis_url is not None:
                store = RedisKeyValueStore.from_url(settings.redis_url)
            else:
                store = InMemoryKeyValueStore()
        if event_store is None:
            event_store = InMemoryRetryEventStore(logger=resolved_logger)

        circuit_breaker = CircuitBreaker(
            config=settings.circuit_breaker_config(),
            store=store,
            key_prefix=settings.circuit_key_prefix,
            listeners=listeners,
            logger=resolved_logger,
        )
        executor = RetryExecutor(
            circuit_breaker=circuit_breaker,
            event_store=event_store,
            sleep=sleep,
            logger=resolved_logger,
        )
        log_info(
            resolved_logger,
            "resilience.runtime_started",
            store=type(store).__name__,
            event_store=type(event_store).__name__,
        )
        return cls(
            settings=settings,
            store=store,
            circuit_breaker=circuit_breaker,
            event_store=event_store,
            executor=executor,
            logger=resolved_logger,
        )

    async def cleanup_events(self) -> int:
        """Apply the configured retention policy to stored events."""
        return await self.event_store.cleanup(self.settings.event_retention_days)

    async def aclose(self) -> None:
        """Finish pending event writes and release the shared store."""
        if self._closed:
            return
        self._closed = True
        await self.executor.drain()
        await self.store.aclose()
        log_info(self._logger, "resilience.runtime_stopped")

    async def __aenter__(self) -> ResilienceRuntime:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()
