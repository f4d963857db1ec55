"""Shared key-value storage for circuit breakers.

Storage is intentionally decoupled from breaker logic. The breaker only needs a
handful of atomic primitives, so any backend that offers them (Redis, or the
in-memory fake used by tests and single-process deployments) can hold breaker
state for a whole fleet of workers.
"""

import asyncio
import sys
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager


def _monotonic() -> float:
    return time.monotonic()


class AbstractKeyValueStore(ABC):
    """Minimal async key-value interface used for breaker state."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored at ``key`` or ``None`` when missing."""

    @abstractmethod
    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        """Store ``value`` at ``key``, optionally expiring after ``ttl_seconds``."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment the integer at ``key`` and return the new value."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set a time-to-live on ``key``. Return false when the key is missing."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Return remaining seconds, ``-1`` without expiry, ``-2`` when missing."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete ``keys`` and return how many existed."""

    @abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str | None,
        *,
        updates: Mapping[str, str | None] | None = None,
    ) -> bool:
        """Atomically replace ``expected`` with ``value``.

        ``expected=None`` matches a missing key and ``value=None`` deletes the
        key. ``updates`` maps further keys to new values (``None`` deletes);
        they are written together with the swap and only when it succeeds.
        Written keys lose any expiry. Returns true when the swap happened.
        """

    async def aclose(self) -> None:
        """Release backend resources."""
        return None


class InMemoryKeyValueStore(AbstractKeyValueStore):
    """Process-local store with cooperative + optional thread locking."""

    def __init__(self) -> None:
        """Initialize value, expiry and lock state."""
        self._values: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._async_lock = asyncio.Lock()
        self._thread_lock = threading.Lock()
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        if self._gil_enabled:
            await self._async_lock.acquire()
            try:
                yield
            finally:
                self._async_lock.release()
            return

        self._thread_lock.acquire()
        try:
            await self._async_lock.acquire()
        except Exception:
            self._thread_lock.release()
            raise
        try:
            yield
        finally:
            self._async_lock.release()
            self._thread_lock.release()

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= _monotonic():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _read(self, key: str) -> str | None:
        self._purge_if_expired(key)
        return self._values.get(key)

    def _write(self, key: str, value: str | None) -> None:
        self._expires_at.pop(key, None)
        if value is None:
            self._values.pop(key, None)
            return
        self._values[key] = value

    async def get(self, key: str) -> str | None:
        """Return the current value, honouring expiry."""
        async with self._locked():
            return self._read(key)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        """Store a value and reset its expiry."""
        async with self._locked():
            self._write(key, value)
            if ttl_seconds is not None:
                self._expires_at[key] = _monotonic() + ttl_seconds

    async def incr(self, key: str) -> int:
        """Increment an integer counter, keeping any existing expiry."""
        async with self._locked():
            current = self._read(key)
            try:
                updated = (0 if current is None else int(current)) + 1
            except ValueError as error:
                raise ValueError(f"value at {key!r} is not an integer") from error
            self._values[key] = str(updated)
            return updated

    async def expire(self, key: str, seconds: int) -> bool:
        """Attach a time-to-live to an existing key."""
        async with self._locked():
            if self._read(key) is None:
                return False
            self._expires_at[key] = _monotonic() + seconds
            return True

    async def ttl(self, key: str) -> int:
        """Return remaining lifetime in whole seconds."""
        async with self._locked():
            if self._read(key) is None:
                return -2
            expires_at = self._expires_at.get(key)
            if expires_at is None:
                return -1
            return max(int(expires_at - _monotonic()), 0)

    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many were present."""
        async with self._locked():
            deleted = 0
            for key in keys:
                if self._read(key) is not None:
                    deleted += 1
                self._write(key, None)
            return deleted

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str | None,
        *,
        updates: Mapping[str, str | None] | None = None,
    ) -> bool:
        """Swap the value only when it still equals ``expected``."""
        async with self._locked():
            if self._read(key) != expected:
                return False
            self._write(key, value)
            for other_key, other_value in (updates or {}).items():
                self._write(other_key, other_value)
            return True
