import random
from typing import Callable

from delisting_hub.services.errors import ErrorKind


BASE_DELAY_MS = 1000
RATE_LIMIT_FLOOR_MS = 60_000
MAX_DELAY_MS = 300_000

RETRYABLE_KINDS = frozenset({
    ErrorKind.API_UNAVAILABLE,
    ErrorKind.RATE_LIMITED,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.TIMEOUT,
})


def compute_retry_delay_ms(
    attempt: int,
    kind: ErrorKind | None = None,
    *,
    rand: Callable[[], float] = random.random,
) -> int:
    # exponential backoff with +/-25% jitter
    delay = (2 ** max(0, attempt)) * BASE_DELAY_MS
    delay += (rand() - 0.5) * 0.5 * delay

    if kind == ErrorKind.RATE_LIMITED:
        delay = max(delay, RATE_LIMIT_FLOOR_MS)

    return int(min(delay, MAX_DELAY_MS))


def is_retryable(kind: ErrorKind | None) -> bool:
    return kind in RETRYABLE_KINDS
