from __future__ import annotations

from datetime import UTC, datetime

import pytest

from resilience_core.circuit_breaker import CircuitOpenError
from resilience_core.errors import ExhaustedRetriesError
from resilience_core.events import InMemoryRetryEventStore, RetryEventData
from resilience_core.models import AttemptDetail, RetryResult
from tests.resilience_core.support.fakes import FakeClock, FakeLogger

pytestmark = pytest.mark.asyncio


def _event(
    service: str = "polls",
    *,
    success: bool = True,
    attempts: int = 1,
    circuit_breaker_key: str | None = None,
    circuit_breaker_triggered: bool = False,
) -> RetryEventData:
    return RetryEventData(
        service=service,
        operation="create",
        attempts=attempts,
        success=success,
        total_duration_ms=10,
        circuit_breaker_triggered=circuit_breaker_triggered,
        circuit_breaker_key=circuit_breaker_key,
    )


async def test_store_assigns_ids_and_timestamps(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
    fake_logger: FakeLogger,
) -> None:
    first = await event_store.store(_event())
    second = await event_store.store(_event())

    assert (first.id, second.id) == (1, 2)
    assert first.created_at == datetime(2020, 1, 1, tzinfo=UTC)
    assert fake_logger.events == ["retry_event.stored", "retry_event.stored"]


async def test_recent_by_service_is_newest_first_and_limited(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
) -> None:
    for _ in range(3):
        await event_store.store(_event("polls"))
        fake_clock.advance(1.0)
    await event_store.store(_event("predictions"))

    recent = await event_store.get_recent_by_service("polls", limit=2)

    assert [event.id for event in recent] == [3, 2]
    assert await event_store.get_recent_by_service("missing") == []


async def test_failure_rate_over_window(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
) -> None:
    await event_store.store(_event(success=False))
    fake_clock.advance(2 * 60 * 60)
    await event_store.store(_event(success=False))
    await event_store.store(_event(success=True))
    await event_store.store(_event(success=True))
    await event_store.store(_event(success=True))

    rate = await event_store.get_failure_rate("polls", minutes=60)

    assert (rate.total, rate.failures) == (4, 1)
    assert rate.rate == pytest.approx(0.25)


async def test_failure_rate_without_events_is_zero(
    event_store: InMemoryRetryEventStore,
) -> None:
    rate = await event_store.get_failure_rate("polls")

    assert (rate.total, rate.failures, rate.rate) == (0, 0, 0.0)


async def test_circuit_breaker_events_only_include_triggered(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
) -> None:
    await event_store.store(_event(circuit_breaker_key="twitch-api"))
    fake_clock.advance(1.0)
    await event_store.store(
        _event(
            success=False,
            attempts=0,
            circuit_breaker_key="twitch-api",
            circuit_breaker_triggered=True,
        )
    )
    await event_store.store(
        _event(
            success=False,
            attempts=0,
            circuit_breaker_key="twitch-polls",
            circuit_breaker_triggered=True,
        )
    )

    events = await event_store.get_circuit_breaker_events("twitch-api")

    assert [event.id for event in events] == [2]


async def test_stats_group_by_service(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
) -> None:
    await event_store.store(_event("polls", attempts=1))
    await event_store.store(_event("polls", success=False, attempts=4))
    await event_store.store(_event("predictions", attempts=2))

    stats = await event_store.get_stats(minutes=60)

    assert stats.total_events == 3
    assert stats.overall_failure_rate == pytest.approx(1 / 3)
    polls = stats.by_service["polls"]
    assert (polls.total, polls.failures, polls.avg_attempts) == (2, 1, 2.5)
    assert stats.by_service["predictions"].avg_attempts == 2.0


async def test_stats_on_empty_store(event_store: InMemoryRetryEventStore) -> None:
    stats = await event_store.get_stats()

    assert stats.total_events == 0
    assert stats.overall_failure_rate == 0.0
    assert dict(stats.by_service) == {}


async def test_cleanup_removes_events_past_retention(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
    fake_logger: FakeLogger,
) -> None:
    await event_store.store(_event())
    await event_store.store(_event())
    fake_clock.advance(31 * 24 * 60 * 60)
    await event_store.store(_event())

    deleted = await event_store.cleanup(retention_days=30)

    assert deleted == 2
    assert [event.id for event in await event_store.get_recent_by_service("polls")] == [3]
    assert fake_logger.fields_for("retry_event.cleanup") == [
        {"deleted_count": 2, "retention_days": 30}
    ]


async def test_store_from_result_maps_result_fields(
    event_store: InMemoryRetryEventStore,
    fake_clock: FakeClock,
) -> None:
    detail = AttemptDetail(
        attempt=1,
        delay_ms=0,
        duration_ms=12,
        timestamp=datetime(2020, 1, 1, tzinfo=UTC),
        status_code=503,
        error_message="HTTP 503",
    )
    result: RetryResult[None] = RetryResult(
        success=False,
        attempts=1,
        total_duration_ms=12,
        attempt_details=(detail,),
        error=ExhaustedRetriesError(attempts=1, status_code=503),
    )

    stored = await event_store.store_from_result(
        result,
        service="polls",
        operation="end",
        circuit_breaker_key="twitch-polls",
        metadata={"source": "scheduler"},
        poll_instance_id="p-9",
    )

    data = stored.data
    assert data.final_status_code == 503
    assert data.error_message == "retries_exhausted: attempts=1 status=503"
    assert data.circuit_breaker_triggered is False
    assert data.poll_instance_id == "p-9"
    assert data.metadata is not None
    assert data.metadata["source"] == "scheduler"
    assert data.metadata["attempt_details"] == [
        {
            "attempt": 1,
            "status_code": 503,
            "error_message": "HTTP 503",
            "delay_ms": 0,
            "duration_ms": 12,
            "timestamp": "2020-01-01T00:00:00+00:00",
            "used_retry_after": False,
        }
    ]


async def test_store_from_short_circuit_result(
    event_store: InMemoryRetryEventStore,
) -> None:
    result: RetryResult[None] = RetryResult(
        success=False,
        attempts=0,
        total_duration_ms=0,
        circuit_breaker_open=True,
        error=CircuitOpenError("twitch-api"),
    )

    stored = await event_store.store_from_result(
        result, service="api", operation="get_user", circuit_breaker_key="twitch-api"
    )

    assert stored.data.circuit_breaker_triggered is True
    assert stored.data.attempts == 0
    assert stored.data.error_message == "circuit_open: twitch-api"
    assert stored.data.metadata is not None
    assert stored.data.metadata["attempt_details"] == []


async def test_event_metadata_is_read_only() -> None:
    data = RetryEventData(
        service="polls",
        operation="create",
        attempts=1,
        success=True,
        total_duration_ms=1,
        circuit_breaker_triggered=False,
        metadata={"a": 1},
    )

    assert data.metadata is not None
    with pytest.raises(TypeError):
        data.metadata["b"] = 2  # type: ignore[index]
