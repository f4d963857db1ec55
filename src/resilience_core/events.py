"""Analytics sink for completed retry-wrapped operations.

The executor hands every finished ``RetryResult`` to a store as a detached
task; stores are append-only apart from retention cleanup.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import MappingProxyType
from typing import Any

from resilience_core.logging import AnyLogger, get_logger, log_debug, log_info
from resilience_core.models import RetryResult


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RetryEventData:
    """Durable summary of one retry-wrapped operation."""

    service: str
    operation: str
    attempts: int
    success: bool
    total_duration_ms: int
    circuit_breaker_triggered: bool
    final_status_code: int | None = None
    error_message: str | None = None
    circuit_breaker_key: str | None = None
    metadata: Mapping[str, object] | None = None
    streamer_id: str | None = None
    campaign_id: str | None = None
    poll_instance_id: str | None = None

    def __post_init__(self) -> None:
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class StoredRetryEvent:
    """A persisted ``RetryEventData`` with its identity and creation time."""

    id: int
    data: RetryEventData
    created_at: datetime


@dataclass(frozen=True)
class FailureRate:
    total: int
    failures: int
    rate: float


@dataclass(frozen=True)
class ServiceRetryStats:
    total: int
    failures: int
    avg_attempts: float


@dataclass(frozen=True)
class RetryEventStats:
    by_service: Mapping[str, ServiceRetryStats]
    total_events: int
    overall_failure_rate: float


class AbstractRetryEventStore(ABC):
    """Retry event persistence and analytics queries."""

    @abstractmethod
    async def store(self, data: RetryEventData) -> StoredRetryEvent:
        """Persist one event."""

    @abstractmethod
    async def get_recent_by_service(
        self, service: str, limit: int = 100
    ) -> list[StoredRetryEvent]:
        """Return the newest events for ``service``."""

    @abstractmethod
    async def get_failure_rate(self, service: str, minutes: int = 60) -> FailureRate:
        """Return the failure rate of ``service`` over the last ``minutes``."""

    @abstractmethod
    async def get_circuit_breaker_events(
        self, circuit_breaker_key: str, limit: int = 50
    ) -> list[StoredRetryEvent]:
        """Return the newest short-circuited events for a breaker key."""

    @abstractmethod
    async def get_stats(self, minutes: int = 60) -> RetryEventStats:
        """Return per-service aggregates over the last ``minutes``."""

    @abstractmethod
    async def cleanup(self, retention_days: int = 30) -> int:
        """Delete events older than ``retention_days`` and return the count."""

    async def store_from_result(
        self,
        result: RetryResult[Any],
        *,
        service: str,
        operation: str,
        circuit_breaker_key: str | None = None,
        metadata: Mapping[str, object] | None = None,
        streamer_id: str | None = None,
        campaign_id: str | None = None,
        poll_instance_id: str | None = None,
    ) -> StoredRetryEvent:
        """Derive a ``RetryEventData`` from ``result`` and persist it."""
        merged_metadata: dict[str, object] = dict(metadata or {})
        merged_metadata["attempt_details"] = [
            detail.to_dict() for detail in result.attempt_details
        ]
        return await self.store(
            RetryEventData(
                service=service,
                operation=operation,
                attempts=result.attempts,
                success=result.success,
                total_duration_ms=result.total_duration_ms,
                circuit_breaker_triggered=result.circuit_breaker_open,
                final_status_code=result.final_status_code,
                error_message=None if result.error is None else str(result.error),
                circuit_breaker_key=circuit_breaker_key,
                metadata=merged_metadata,
                streamer_id=streamer_id,
                campaign_id=campaign_id,
                poll_instance_id=poll_instance_id,
            )
        )


class InMemoryRetryEventStore(AbstractRetryEventStore):
    """Process-local event store, suitable for tests and single workers."""

    def __init__(self, *, logger: AnyLogger | None = None) -> None:
        self._events: list[StoredRetryEvent] = []
        self._ids = itertools.count(1)
        self._logger = get_logger(__name__) if logger is None else logger

    def _newest_first(self) -> list[StoredRetryEvent]:
        return sorted(
            self._events,
            key=lambda event: (event.created_at, event.id),
            reverse=True,
        )

    def _since(self, minutes: int) -> list[StoredRetryEvent]:
        since = _utcnow() - timedelta(minutes=minutes)
        return [event for event in self._events if event.created_at >= since]

    async def store(self, data: RetryEventData) -> StoredRetryEvent:
        event = StoredRetryEvent(id=next(self._ids), data=data, created_at=_utcnow())
        self._events.append(event)
        log_debug(
            self._logger,
            "retry_event.stored",
            id=event.id,
            service=data.service,
            operation=data.operation,
            success=data.success,
            attempts=data.attempts,
        )
        return event

    async def get_recent_by_service(
        self, service: str, limit: int = 100
    ) -> list[StoredRetryEvent]:
        matches = [e for e in self._newest_first() if e.data.service == service]
        return matches[:limit]

    async def get_failure_rate(self, service: str, minutes: int = 60) -> FailureRate:
        events = [e for e in self._since(minutes) if e.data.service == service]
        total = len(events)
        failures = sum(1 for event in events if not event.data.success)
        return FailureRate(
            total=total,
            failures=failures,
            rate=failures / total if total else 0.0,
        )

    async def get_circuit_breaker_events(
        self, circuit_breaker_key: str, limit: int = 50
    ) -> list[StoredRetryEvent]:
        matches = [
            event
            for event in self._newest_first()
            if event.data.circuit_breaker_key == circuit_breaker_key
            and event.data.circuit_breaker_triggered
        ]
        return matches[:limit]

    async def get_stats(self, minutes: int = 60) -> RetryEventStats:
        events = self._since(minutes)
        totals: dict[str, list[int]] = {}
        for event in events:
            # [total, failures, attempts]
            bucket = totals.setdefault(event.data.service, [0, 0, 0])
            bucket[0] += 1
            bucket[2] += event.data.attempts
            if not event.data.success:
                bucket[1] += 1

        by_service = {
            service: ServiceRetryStats(
                total=total,
                failures=failures,
                avg_attempts=attempts / total if total else 0.0,
            )
            for service, (total, failures, attempts) in totals.items()
        }
        total_events = len(events)
        total_failures = sum(1 for event in events if not event.data.success)
        return RetryEventStats(
            by_service=MappingProxyType(by_service),
            total_events=total_events,
            overall_failure_rate=(
                total_failures / total_events if total_events else 0.0
            ),
        )

    async def cleanup(self, retention_days: int = 30) -> int:
        cutoff = _utcnow() - timedelta(days=retention_days)
        kept = [event for event in self._events if event.created_at >= cutoff]
        deleted_count = len(self._events) - len(kept)
        self._events = kept
        log_info(
            self._logger,
            "retry_event.cleanup",
            deleted_count=deleted_count,
            retention_days=retention_days,
        )
        return deleted_count
