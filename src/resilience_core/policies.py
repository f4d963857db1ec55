"""Pre-defined retry policies for calls to the Twitch API.

Bind a context before use, for example
``TWITCH_POLLS.with_context(RetryContext(service="polls", operation="create"))``.
"""

from resilience_core.models import RetryOptions

RATE_LIMITED_STATUSES = frozenset({429})
SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})

TWITCH_API_BREAKER_KEY = "twitch-api"
TWITCH_POLLS_BREAKER_KEY = "twitch-polls"

# 429 responses: exponential backoff with jitter, honouring Retry-After.
RATE_LIMITED = RetryOptions(
    max_retries=3,
    base_delay_ms=1_000,
    max_delay_ms=30_000,
    use_exponential_backoff=True,
    retryable_errors=RATE_LIMITED_STATUSES,
)

# 5xx responses: progressive delay, 1s -> 2s -> 4s.
SERVER_ERROR = RetryOptions(
    max_retries=3,
    base_delay_ms=500,
    max_delay_ms=4_000,
    use_exponential_backoff=False,
    retryable_errors=SERVER_ERROR_STATUSES,
)

TWITCH_API = RetryOptions(
    max_retries=3,
    base_delay_ms=500,
    max_delay_ms=30_000,
    use_exponential_backoff=True,
    retryable_errors=RATE_LIMITED_STATUSES | SERVER_ERROR_STATUSES,
    attempt_timeout_ms=10_000,
    circuit_breaker_key=TWITCH_API_BREAKER_KEY,
)

# Poll endpoints sit on the critical path and get their own breaker.
TWITCH_POLLS = RetryOptions(
    max_retries=3,
    base_delay_ms=500,
    max_delay_ms=30_000,
    use_exponential_backoff=True,
    retryable_errors=RATE_LIMITED_STATUSES | SERVER_ERROR_STATUSES,
    attempt_timeout_ms=10_000,
    circuit_breaker_key=TWITCH_POLLS_BREAKER_KEY,
)
