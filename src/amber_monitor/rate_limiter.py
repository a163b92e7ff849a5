"""Rate-limit tracking and retry logic for the Amber API client.

The API reports its quota through ``ratelimit-*`` response headers. The
tracker keeps whatever the most recent response said (last write wins).
Retries are opt-in: callers wrap a coroutine factory in ``with_retry``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping, Optional, TypeVar

from amber_monitor.config import DEFAULT_CONFIG, RetryConfig
from amber_monitor.schemas import RateLimitState

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HEADER_LIMIT = "ratelimit-limit"
_HEADER_REMAINING = "ratelimit-remaining"
_HEADER_RESET = "ratelimit-reset"


def _parse_header_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


class RateLimitTracker:
    """Holds the RateLimitState captured from the latest API response."""

    def __init__(self, low_remaining_warning: int = 10) -> None:
        self._state = RateLimitState()
        self._low_remaining_warning = low_remaining_warning

    @property
    def state(self) -> RateLimitState:
        return self._state

    def update_from_headers(self, headers: Mapping[str, str]) -> RateLimitState:
        """Overwrite the state from response headers (success or error)."""
        state = RateLimitState(
            limit=_parse_header_int(headers.get(_HEADER_LIMIT)),
            remaining=_parse_header_int(headers.get(_HEADER_REMAINING)),
            reset=_parse_header_int(headers.get(_HEADER_RESET)),
        )
        self._state = state
        if state.remaining is not None and state.remaining < self._low_remaining_warning:
            logger.warning(
                "API rate limit running low (remaining=%d, limit=%s, reset=%ss)",
                state.remaining, state.limit, state.reset,
            )
        return state


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_CONFIG.retry,
) -> float:
    """delay = base * 2^attempt, no jitter."""
    return config.base_delay_seconds * (2 ** attempt)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    config: RetryConfig = DEFAULT_CONFIG.retry,
) -> T:
    """Await ``fn()`` up to ``max_attempts`` times with exponential backoff.

    Any exception counts as a failed attempt. The last exception is
    re-raised once attempts are exhausted.
    """
    if max_attempts is not None or base_delay is not None:
        config = RetryConfig(
            max_attempts=max_attempts if max_attempts is not None else config.max_attempts,
            base_delay_seconds=(
                base_delay if base_delay is not None else config.base_delay_seconds
            ),
        )
    if config.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exc: Optional[Exception] = None
    for attempt in range(config.max_attempts):
        try:
            return await fn()
        except Exception as exc:
            last_exc = exc
            if attempt >= config.max_attempts - 1:
                break
            delay = compute_backoff_delay(attempt, config)
            logger.warning(
                "Request failed (attempt %d/%d): %s - retrying in %.1fs",
                attempt + 1, config.max_attempts, exc, delay,
            )
            await asyncio.sleep(delay)

    raise last_exc  # type: ignore[misc]
