from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import redis.asyncio as redis

from resilience_core.circuit_breaker.storage import AbstractKeyValueStore

# ARGV: expect_missing flag, expected value, delete flag, new value, then one
# delete flag and value pair for each extra key in KEYS[2..].
_COMPARE_AND_SET_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if ARGV[1] == '1' then
  if current then
    return 0
  end
elseif current ~= ARGV[2] then
  return 0
end
for i = 1, #KEYS do
  if ARGV[2 * i + 1] == '1' then
    redis.call('DEL', KEYS[i])
  else
    redis.call('SET', KEYS[i], ARGV[2 * i + 2])
  end
end
return 1
"""


class _ScriptLike(Protocol):
    """Registered Lua script surface used by the store."""

    async def __call__(
        self,
        keys: list[str] | None = None,
        args: list[str] | None = None,
    ) -> Any:
        """Run the script against ``keys`` with ``args``."""


def _decode(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisKeyValueStore(AbstractKeyValueStore):
    """Key-value store backed by a shared Redis instance.

    Every breaker primitive maps onto one Redis command, except
    ``compare_and_set`` which runs as a single Lua script so concurrent
    workers cannot interleave between the read and the write.
    """

    def __init__(self, client: redis.Redis, *, owns_client: bool = False) -> None:
        """Wrap an existing async Redis client.

        Args:
            client: Connected ``redis.asyncio.Redis`` client.
            owns_client: Close the client in ``aclose`` when true.
        """
        self._client = client
        self._owns_client = owns_client
        self._compare_and_set: _ScriptLike = client.register_script(
            _COMPARE_AND_SET_SCRIPT
        )

    @classmethod
    def from_url(cls, url: str) -> RedisKeyValueStore:
        """Build a store owning a new client created from ``url``."""
        return cls(redis.Redis.from_url(url), owns_client=True)

    async def get(self, key: str) -> str | None:
        return _decode(await self._client.get(key))

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._client.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str | None,
        *,
        updates: Mapping[str, str | None] | None = None,
    ) -> bool:
        writes = {key: value, **(updates or {})}
        args = [
            "1" if expected is None else "0",
            "" if expected is None else expected,
        ]
        for new_value in writes.values():
            args.extend(["1" if new_value is None else "0", new_value or ""])
        result = await self._compare_and_set(keys=list(writes), args=args)
        return int(result) == 1

    async def aclose(self) -> None:
        """Close the underlying client when this store created it."""
        if self._owns_client:
            await self._client.aclose()
