"""
Uniform resilience wrapper for provider calls.

Every call goes through the same pipeline: each attempt is timed out and its
errors translated, the circuit breaker records the attempt, and the retry
executor decides whether to try again.
"""

import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ..resilience.circuit_breaker import CircuitBreaker
from ..resilience.retry import RetryConfig, execute_with_retry, with_timeout
from ..resilience.translator import translate_error
from .base import ImageResponse, Message, SpeechResponse, TextResponse, TextStreamChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def resilient_call(
    fn: Callable[[], Awaitable[T]],
    provider: str,
    breaker: CircuitBreaker,
    retry_config: Optional[RetryConfig] = None,
    context: Optional[Dict[str, Any]] = None,
) -> T:
    """Call a provider through timeout, translation, circuit breaker and retry.

    Raises:
        AIServiceError: Translated error of the last attempt, or
            CircuitBreakerOpenError when the provider's circuit is open
    """
    retry_config = retry_config or RetryConfig()
    timeout_ms = retry_config.timeout_ms

    async def attempt() -> T:
        try:
            if timeout_ms:
                return await with_timeout(fn(), timeout_ms, provider)
            return await fn()
        except Exception as e:
            raise translate_error(e, provider, context) from e

    async def guarded() -> T:
        return await breaker.execute(attempt, provider)

    # The timeout already wraps each attempt inside the breaker
    return await execute_with_retry(
        guarded, replace(retry_config, timeout_ms=None), provider
    )


class ResilientProvider:
    """Wraps any provider so all of its capabilities go through ``resilient_call``.

    Usage:
        provider = ResilientProvider(OpenAIProvider(), breaker, RetryConfig())
        response = await provider.generate_text(messages, "gpt-4o")
    """

    def __init__(
        self,
        provider: Any,
        breaker: CircuitBreaker,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.provider = provider
        self.breaker = breaker
        self.retry_config = retry_config or RetryConfig()

    @property
    def name(self) -> str:
        return self.provider.name

    def _call(self, fn: Callable[[], Awaitable[T]], context: Dict[str, Any]) -> Awaitable[T]:
        return resilient_call(fn, self.name, self.breaker, self.retry_config, context)

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse:
        return await self._call(
            lambda: self.provider.generate_text(messages, model, max_tokens, temperature),
            {"model": model, "operation": "text"},
        )

    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        count: int = 1,
    ) -> ImageResponse:
        return await self._call(
            lambda: self.provider.generate_image(prompt, model, size, count),
            {"model": model, "operation": "image", "size": size},
        )

    async def synthesize_speech(
        self,
        text: str,
        model: str,
        voice: str = "alloy",
    ) -> SpeechResponse:
        return await self._call(
            lambda: self.provider.synthesize_speech(text, model, voice),
            {"model": model, "operation": "speech"},
        )

    async def stream_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextStreamChunk]:
        """Stream text with the breaker and retry guarding the opening of the stream.

        Once the first chunk has arrived the stream is never restarted;
        later errors are translated and raised to the consumer.
        """
        context = {"model": model, "operation": "stream"}

        async def open_stream() -> Tuple[AsyncIterator[TextStreamChunk], Optional[TextStreamChunk]]:
            iterator = self.provider.stream_text(
                messages, model, max_tokens, temperature
            ).__aiter__()
            try:
                first = await iterator.__anext__()
            except StopAsyncIteration:
                return iterator, None
            return iterator, first

        iterator, first = await self._call(open_stream, context)
        if first is None:
            return
        yield first

        while True:
            try:
                chunk = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except Exception as e:
                logger.warning(f"Stream from {self.name} failed mid-response: {e}")
                raise translate_error(e, self.name, context) from e
            yield chunk
