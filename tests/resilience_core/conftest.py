from __future__ import annotations

import pytest

import resilience_core.circuit_breaker.breaker as breaker_mod
import resilience_core.circuit_breaker.storage as storage_mod
import resilience_core.events as events_mod
from resilience_core.circuit_breaker import InMemoryKeyValueStore
from resilience_core.events import InMemoryRetryEventStore
from tests.resilience_core.support.fakes import FakeClock, FakeLogger, RecordingSleep


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Patch breaker, store and event clocks onto one controllable clock."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_now_ms", clock.now_ms)
    monkeypatch.setattr(storage_mod, "_monotonic", clock.monotonic)
    monkeypatch.setattr(events_mod, "_utcnow", clock.now)
    return clock


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    """Provide a fresh in-memory key-value store per test."""
    return InMemoryKeyValueStore()


@pytest.fixture
def event_store(fake_logger: FakeLogger) -> InMemoryRetryEventStore:
    """Provide a fresh in-memory retry event store per test."""
    return InMemoryRetryEventStore(logger=fake_logger)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a sleep replacement that records delays without waiting."""
    return RecordingSleep()
