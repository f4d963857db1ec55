"""Delay calculators for retry attempts.

All delays are in milliseconds. Every calculator is a pure function of its
inputs except for the jitter term of
``BackoffStrategy.calculate_exponential_with_jitter``.
"""

from __future__ import annotations

import math
import random

MAX_ATTEMPT = 10
MAX_BASE_DELAY_MS = 60_000
MAX_DELAY_CAP_MS = 300_000
MAX_RETRY_AFTER_SECONDS = 300


def resolve_retry_after(retry_after_seconds: float | None) -> float | None:
    """Return a usable Retry-After hint in seconds, or ``None`` when absent.

    Zero, negative and non-finite values are treated as absent. Positive values
    are capped at ``MAX_RETRY_AFTER_SECONDS``.
    """
    if retry_after_seconds is None or not math.isfinite(retry_after_seconds):
        return None
    if retry_after_seconds <= 0:
        return None
    return min(retry_after_seconds, MAX_RETRY_AFTER_SECONDS)


class BackoffStrategy:
    """Stateless delay calculator for retry attempts."""

    def __init__(self, *, rng: random.Random | None = None) -> None:
        self._rng = random.Random() if rng is None else rng

    @staticmethod
    def calculate_progressive(attempt: int, base_delay_ms: float) -> float:
        """Return ``base_delay_ms * 2 ** attempt`` without any cap."""
        return base_delay_ms * 2**attempt

    def calculate_exponential_with_jitter(
        self,
        attempt: int,
        base_delay_ms: float,
        max_delay_ms: float,
    ) -> float:
        """Return a capped exponential delay plus up to ``base_delay_ms`` jitter."""
        raw = min(base_delay_ms * 2**attempt, max_delay_ms)
        jitter = self._rng.random() * base_delay_ms
        return min(raw + jitter, max_delay_ms)

    @staticmethod
    def calculate_with_retry_after(
        retry_after_seconds: float | None,
        fallback_delay_ms: float,
    ) -> float:
        """Prefer a positive finite server hint, otherwise return the fallback delay."""
        if (
            retry_after_seconds is not None
            and math.isfinite(retry_after_seconds)
            and retry_after_seconds > 0
        ):
            return retry_after_seconds * 1000
        return fallback_delay_ms

    def calculate(
        self,
        attempt: int,
        base_delay_ms: float,
        max_delay_ms: float,
        use_exponential: bool,
        retry_after_seconds: float | None = None,
    ) -> float:
        """Return the delay before the next attempt.

        A positive Retry-After hint always wins over the computed backoff but is
        still capped at ``max_delay_ms``.

        Args:
            attempt: Zero-based retry index.
            base_delay_ms: Base delay in milliseconds.
            max_delay_ms: Upper bound for the returned delay.
            use_exponential: Use exponential backoff with jitter when true,
                progressive doubling otherwise.
            retry_after_seconds: Optional server-provided hint.

        Raises:
            ValueError: If any parameter is outside the safe range.
        """
        _validate_params(attempt, base_delay_ms, max_delay_ms)

        retry_after = resolve_retry_after(retry_after_seconds)
        if retry_after is not None:
            return min(retry_after * 1000, max_delay_ms)

        if use_exponential:
            return self.calculate_exponential_with_jitter(
                attempt, base_delay_ms, max_delay_ms
            )
        return min(self.calculate_progressive(attempt, base_delay_ms), max_delay_ms)


def _validate_params(attempt: int, base_delay_ms: float, max_delay_ms: float) -> None:
    if attempt < 0 or attempt > MAX_ATTEMPT:
        raise ValueError(f"attempt must be between 0 and {MAX_ATTEMPT}, got {attempt}")
    if base_delay_ms < 0 or base_delay_ms > MAX_BASE_DELAY_MS:
        raise ValueError(
            f"base_delay_ms must be between 0 and {MAX_BASE_DELAY_MS}, "
            f"got {base_delay_ms}"
        )
    if max_delay_ms < 0 or max_delay_ms > MAX_DELAY_CAP_MS:
        raise ValueError(
            f"max_delay_ms must be between 0 and {MAX_DELAY_CAP_MS}, "
            f"got {max_delay_ms}"
        )
