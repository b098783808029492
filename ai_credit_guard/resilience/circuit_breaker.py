"""
Per-provider circuit breaker.

Stops calling a provider that keeps failing so callers fail fast instead of
piling up on a dead upstream. Each provider key gets an independent
CLOSED -> OPEN -> HALF_OPEN -> CLOSED state machine.

State lives in process memory and is lost on restart.
"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .errors import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Calls rejected without reaching the provider
    HALF_OPEN = "half_open"  # Probing whether the provider recovered


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds and windows for the circuit breaker (times in milliseconds)."""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_ms: int = 60000
    monitoring_period_ms: int = 120000

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.timeout_ms < 0:
            raise ValueError("timeout_ms cannot be negative")
        if self.monitoring_period_ms <= 0:
            raise ValueError("monitoring_period_ms must be > 0")


@dataclass
class ProviderMetrics:
    """Mutable breaker state of one provider."""
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    last_failure_time: float = 0
    last_success_time: float = 0
    next_attempt_time: float = 0


def _wall_clock_ms() -> float:
    return time.time() * 1000


class CircuitBreaker:
    """Circuit breaker keyed by provider.

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
        result = await breaker.execute(lambda: client.call(), "openai")

    Args:
        config: Thresholds; defaults when omitted
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = _wall_clock_ms,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics: Dict[str, ProviderMetrics] = {}

    async def execute(self, fn: Callable[[], Awaitable[T]], provider: str) -> T:
        """Run ``fn`` if the circuit for ``provider`` allows it.

        Raises:
            CircuitBreakerOpenError: If the circuit is open and its timeout has
                not yet elapsed; ``fn`` is not called
        """
        metrics = self._get_metrics(provider)

        if metrics.state == CircuitState.OPEN:
            if self._clock() >= metrics.next_attempt_time:
                self._transition_to_half_open(provider, metrics)
            else:
                logger.warning(
                    f"Circuit breaker is open for {provider}, "
                    f"next attempt at {metrics.next_attempt_time:.0f}"
                )
                raise CircuitBreakerOpenError(
                    provider,
                    next_attempt_time=metrics.next_attempt_time,
                    context={"state": metrics.state.value},
                )

        try:
            result = await fn()
        except Exception:
            self._record_failure(provider, metrics)
            raise

        self._record_success(provider, metrics)
        return result

    def get_state(self, provider: str) -> CircuitState:
        metrics = self._metrics.get(provider)
        return metrics.state if metrics else CircuitState.CLOSED

    def get_provider_metrics(self, provider: str) -> ProviderMetrics:
        """Snapshot of a provider's metrics; mutating it has no effect."""
        metrics = self._metrics.get(provider)
        return replace(metrics) if metrics else ProviderMetrics()

    def reset(self, provider: str) -> None:
        self._metrics.pop(provider, None)
        logger.info(f"Circuit breaker reset for {provider}")

    def reset_all(self) -> None:
        self._metrics.clear()
        logger.info("All circuit breakers reset")

    def _get_metrics(self, provider: str) -> ProviderMetrics:
        if provider not in self._metrics:
            self._metrics[provider] = ProviderMetrics()
        return self._metrics[provider]

    def _record_success(self, provider: str, metrics: ProviderMetrics) -> None:
        metrics.successes += 1
        metrics.last_success_time = self._clock()

        if metrics.state == CircuitState.HALF_OPEN:
            if metrics.successes >= self.config.success_threshold:
                self._transition_to_closed(provider, metrics)
        elif metrics.state == CircuitState.CLOSED:
            metrics.failures = 0

        logger.debug(
            f"Circuit breaker success for {provider}: state={metrics.state.value} "
            f"successes={metrics.successes} failures={metrics.failures}"
        )

    def _record_failure(self, provider: str, metrics: ProviderMetrics) -> None:
        now = self._clock()

        # Failures older than the monitoring window no longer count
        if now - metrics.last_failure_time > self.config.monitoring_period_ms:
            metrics.failures = 0

        metrics.failures += 1
        metrics.last_failure_time = now

        logger.warning(
            f"Circuit breaker failure for {provider}: state={metrics.state.value} "
            f"failures={metrics.failures}/{self.config.failure_threshold}"
        )

        if metrics.state == CircuitState.HALF_OPEN:
            self._transition_to_open(provider, metrics)
        elif (
            metrics.state == CircuitState.CLOSED
            and metrics.failures >= self.config.failure_threshold
        ):
            self._transition_to_open(provider, metrics)

    def _transition_to_open(self, provider: str, metrics: ProviderMetrics) -> None:
        metrics.state = CircuitState.OPEN
        metrics.next_attempt_time = self._clock() + self.config.timeout_ms
        metrics.successes = 0
        logger.error(
            f"Circuit breaker opened for {provider} after {metrics.failures} failures"
        )

    def _transition_to_half_open(self, provider: str, metrics: ProviderMetrics) -> None:
        metrics.state = CircuitState.HALF_OPEN
        metrics.successes = 0
        metrics.failures = 0
        logger.info(f"Circuit breaker half-open for {provider}")

    def _transition_to_closed(self, provider: str, metrics: ProviderMetrics) -> None:
        metrics.state = CircuitState.CLOSED
        metrics.failures = 0
        metrics.successes = 0
        logger.info(f"Circuit breaker closed for {provider}")
