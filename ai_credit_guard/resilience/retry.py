"""
Retry executor with exponential backoff and per-attempt timeouts.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import AIServiceError, AITimeoutError, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_MESSAGE_MARKERS = (
    # network
    "network", "econnreset", "enotfound", "etimedout",
    # timeouts
    "timeout", "timed out",
    # rate limits
    "rate limit", "429", "too many requests",
    # server errors
    "500", "502", "503", "504",
    "internal server error", "service unavailable", "bad gateway",
    # provider capacity
    "overloaded", "capacity", "quota",
)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings (times in milliseconds).

    ``max_retries`` is the total number of attempts. ``on_retry`` is called
    with ``(attempt, error)`` before each backoff sleep.
    """
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    timeout_ms: Optional[int] = 60000
    on_retry: Optional[Callable[[int, BaseException], None]] = None

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms cannot be negative")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff before the attempt after ``attempt`` (1-based)."""
        return min(
            self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1),
            self.max_delay_ms,
        )


async def sleep(ms: float) -> None:
    await asyncio.sleep(ms / 1000)


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether another attempt could succeed.

    Translated errors carry their own flag. Anything else is classified by
    its type and message.
    """
    if isinstance(error, CircuitBreakerOpenError):
        return False
    if isinstance(error, AIServiceError):
        return error.retryable
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    name = type(error).__name__.lower()
    if "networkerror" in name or "timeout" in name:
        return True
    return any(marker in message for marker in _RETRYABLE_MESSAGE_MARKERS)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout_ms: float,
    provider: Optional[str] = None,
) -> T:
    """Await ``awaitable`` for at most ``timeout_ms``.

    Raises:
        AITimeoutError: If the deadline passes first; the awaitable is cancelled
    """
    try:
        return await asyncio.wait_for(awaitable, timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise AITimeoutError(
            provider or "unknown", {"timeout_ms": timeout_ms}
        ) from e


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    provider: Optional[str] = None,
) -> T:
    """Call ``fn`` until it succeeds, it fails non-retryably, or attempts run out.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        config: Backoff settings; defaults when omitted
        provider: Provider key used for timeout errors and logs

    Returns:
        The first successful result

    Raises:
        The last error raised by ``fn``
    """
    config = config or RetryConfig()

    attempt = 1
    while True:
        try:
            if config.timeout_ms:
                return await with_timeout(fn(), config.timeout_ms, provider)
            return await fn()
        except Exception as e:
            if attempt >= config.max_retries:
                logger.error(
                    f"Max retries exceeded for {provider} after {attempt} attempts: {e}"
                )
                raise
            if not is_retryable_error(e):
                logger.info(f"Non-retryable error from {provider} on attempt {attempt}: {e}")
                raise

            delay = config.delay_for_attempt(attempt)
            logger.info(
                f"Retrying {provider} after error on attempt {attempt}, "
                f"waiting {delay:.0f}ms: {e}"
            )
            if config.on_retry:
                config.on_retry(attempt, e)
            await sleep(delay)
            attempt += 1


def add_jitter(delay: float, factor: float = 0.1) -> float:
    """Spread ``delay`` by up to ``factor`` of itself to avoid thundering herds."""
    return delay + delay * factor * random.random()
