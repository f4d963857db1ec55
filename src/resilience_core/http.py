"""Adapters turning ``httpx`` responses into ``HttpCallResult`` values."""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

import httpx

from resilience_core.errors import HttpStatusError
from resilience_core.models import HttpCallResult, is_success_status

T = TypeVar("T")

MAX_ERROR_DETAIL_LENGTH = 512


def _utcnow() -> datetime:
    return datetime.now(UTC)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts delta-seconds or an HTTP date. Returns ``None`` for missing,
    unparseable or non-finite values; dates in the past yield ``0.0``.
    """
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    try:
        seconds = float(stripped)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return None
        return max(seconds, 0.0)

    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max((retry_at - _utcnow()).total_seconds(), 0.0)


def result_from_response(
    response: httpx.Response,
    *,
    parse: Callable[[httpx.Response], T] | None = None,
) -> HttpCallResult[T]:
    """Normalize one ``httpx.Response``.

    ``parse`` only runs for 2xx responses; without it ``data`` stays ``None``.
    """
    status_code = response.status_code
    if is_success_status(status_code):
        data = None if parse is None else parse(response)
        return HttpCallResult(success=True, status_code=status_code, data=data)

    return HttpCallResult.failure(
        status_code,
        error=HttpStatusError(status_code, response.text[:MAX_ERROR_DETAIL_LENGTH]),
        retry_after_seconds=parse_retry_after(response.headers.get("Retry-After")),
    )


def httpx_operation(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    parse: Callable[[httpx.Response], T] | None = None,
) -> Callable[[], Awaitable[HttpCallResult[T]]]:
    """Wrap a request factory into an operation for ``RetryExecutor.run``.

    Transport errors become failed results without a status code.
    """

    async def _operation() -> HttpCallResult[T]:
        try:
            response = await send()
        except httpx.RequestError as exc:
            return HttpCallResult.failure(None, error=exc)
        return result_from_response(response, parse=parse)

    return _operation
