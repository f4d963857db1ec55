from __future__ import annotations

import pytest

from resilience_core.circuit_breaker import InMemoryKeyValueStore
from tests.resilience_core.support.fakes import FakeClock

pytestmark = pytest.mark.asyncio


class _ExplodingAsyncLock:
    async def acquire(self) -> None:
        raise RuntimeError("async acquire failed")

    def release(self) -> None:
        return


async def test_get_and_set(kv_store: InMemoryKeyValueStore) -> None:
    assert await kv_store.get("k") is None

    await kv_store.set("k", "v")

    assert await kv_store.get("k") == "v"
    assert await kv_store.ttl("k") == -1


async def test_set_with_ttl_expires(
    kv_store: InMemoryKeyValueStore,
    fake_clock: FakeClock,
) -> None:
    await kv_store.set("k", "v", ttl_seconds=10)
    assert await kv_store.ttl("k") == 10

    fake_clock.advance(9.5)
    assert await kv_store.get("k") == "v"

    fake_clock.advance(0.5)
    assert await kv_store.get("k") is None
    assert await kv_store.ttl("k") == -2


async def test_set_without_ttl_clears_previous_expiry(
    kv_store: InMemoryKeyValueStore,
    fake_clock: FakeClock,
) -> None:
    await kv_store.set("k", "v", ttl_seconds=5)
    await kv_store.set("k", "w")

    fake_clock.advance(10.0)

    assert await kv_store.get("k") == "w"


async def test_incr_counts_from_zero_and_keeps_expiry(
    kv_store: InMemoryKeyValueStore,
    fake_clock: FakeClock,
) -> None:
    assert await kv_store.incr("n") == 1
    assert await kv_store.expire("n", 30) is True
    assert await kv_store.incr("n") == 2
    assert await kv_store.ttl("n") == 30

    fake_clock.advance(30.0)

    assert await kv_store.incr("n") == 1


async def test_incr_rejects_non_integer_values(
    kv_store: InMemoryKeyValueStore,
) -> None:
    await kv_store.set("n", "abc")

    with pytest.raises(ValueError, match="not an integer"):
        await kv_store.incr("n")


async def test_expire_missing_key_returns_false(
    kv_store: InMemoryKeyValueStore,
) -> None:
    assert await kv_store.expire("missing", 10) is False


async def test_delete_counts_existing_keys(kv_store: InMemoryKeyValueStore) -> None:
    await kv_store.set("a", "1")
    await kv_store.set("b", "2")

    assert await kv_store.delete("a", "b", "c") == 2
    assert await kv_store.get("a") is None
    assert await kv_store.delete() == 0


async def test_compare_and_set_on_missing_key(
    kv_store: InMemoryKeyValueStore,
) -> None:
    assert await kv_store.compare_and_set("k", None, "OPEN") is True
    assert await kv_store.get("k") == "OPEN"

    assert await kv_store.compare_and_set("k", None, "OPEN") is False


async def test_compare_and_set_swaps_only_expected_value(
    kv_store: InMemoryKeyValueStore,
) -> None:
    await kv_store.set("k", "OPEN")

    assert await kv_store.compare_and_set("k", "HALF_OPEN", "OPEN") is False
    assert await kv_store.compare_and_set("k", "OPEN", "HALF_OPEN") is True
    assert await kv_store.get("k") == "HALF_OPEN"


async def test_compare_and_set_with_none_value_deletes(
    kv_store: InMemoryKeyValueStore,
) -> None:
    await kv_store.set("k", "HALF_OPEN")

    assert await kv_store.compare_and_set("k", "HALF_OPEN", None) is True
    assert await kv_store.get("k") is None


async def test_compare_and_set_applies_updates_only_when_swapped(
    kv_store: InMemoryKeyValueStore,
) -> None:
    await kv_store.set("state", "HALF_OPEN")
    await kv_store.set("successes", "2")

    applied = await kv_store.compare_and_set(
        "state",
        None,
        "OPEN",
        updates={"opened_at": "1000", "successes": None},
    )

    assert applied is False
    assert await kv_store.get("opened_at") is None
    assert await kv_store.get("successes") == "2"

    applied = await kv_store.compare_and_set(
        "state",
        "HALF_OPEN",
        "OPEN",
        updates={"opened_at": "1000", "successes": None},
    )

    assert applied is True
    assert await kv_store.get("state") == "OPEN"
    assert await kv_store.get("opened_at") == "1000"
    assert await kv_store.get("successes") is None


async def test_compare_and_set_treats_expired_key_as_missing(
    kv_store: InMemoryKeyValueStore,
    fake_clock: FakeClock,
) -> None:
    await kv_store.set("k", "OPEN", ttl_seconds=1)
    fake_clock.advance(2.0)

    assert await kv_store.compare_and_set("k", None, "OPEN") is True


async def test_aclose_is_a_no_op(kv_store: InMemoryKeyValueStore) -> None:
    await kv_store.set("k", "v")

    await kv_store.aclose()

    assert await kv_store.get("k") == "v"


async def test_storage_uses_thread_lock_path_when_gil_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "resilience_core.circuit_breaker.storage.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    store = InMemoryKeyValueStore()

    await store.set("k", "v")

    assert await store.get("k") == "v"
    assert store._thread_lock.locked() is False


async def test_storage_releases_thread_lock_if_async_lock_acquire_fails(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "resilience_core.circuit_breaker.storage.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    store = InMemoryKeyValueStore()
    store._async_lock = _ExplodingAsyncLock()  # type: ignore[assignment]

    with pytest.raises(RuntimeError, match="async acquire failed"):
        async with store._locked():
            pass

    assert store._thread_lock.locked() is False
