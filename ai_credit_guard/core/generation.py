"""
Credit-metered AI generation.

Every generation reserves its estimated cost, calls the provider, then settles
the reservation: the actual cost is consumed and the rest released. A failed
call, including a cancelled one, releases the whole reservation. Each
attempt is written to the usage event ledger.

The ledger is synchronous SQLite, so its calls run in worker threads to keep
the event loop free.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import UsageEvent
from ..storage.repository import insert_usage_event
from .credit_calculator import CreditCalculator
from .ledger import AllocationResult, CreditLedger
from .token_counter import TokenUsage, estimate_message_tokens, estimate_tokens
from ..providers.base import (
    ImageGenerationProvider,
    ImageResponse,
    Message,
    ResponseMetadata,
    SpeechResponse,
    SpeechSynthesisProvider,
    TextGenerationProvider,
    TextResponse,
)
from ..resilience.streaming import StreamError, StreamingHandler, StreamResult

logger = logging.getLogger(__name__)

R = TypeVar("R")
T = TypeVar("T")

REFERENCE_TYPE = "generation"


@dataclass(frozen=True)
class GenerationResult(Generic[R]):
    """Provider response together with what it cost."""
    response: R
    credits_charged: int
    allocation_id: str


class GenerationService:
    """Runs provider calls against a workspace's credits.

    Args:
        ledger: Credit ledger holding the workspace balances
        calculator: Converts usage into credits
        db_path: Database receiving usage events
        bill_partial_streams: Charge for content received before a stream failed
        stream_timeout_ms: Inactivity timeout for streams
        max_buffer_size: Chunk limit for streams
    """

    def __init__(
        self,
        ledger: CreditLedger,
        calculator: CreditCalculator,
        db_path: str = DEFAULT_DB_PATH,
        bill_partial_streams: bool = True,
        stream_timeout_ms: int = 30000,
        max_buffer_size: int = 10000,
    ):
        self.ledger = ledger
        self.calculator = calculator
        self.db_path = db_path
        self.bill_partial_streams = bill_partial_streams
        self.stream_timeout_ms = stream_timeout_ms
        self.max_buffer_size = max_buffer_size

    async def generate_text(
        self,
        workspace_id: str,
        provider: TextGenerationProvider,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> GenerationResult[TextResponse]:
        """Generate a chat completion and charge its token usage.

        Raises:
            InsufficientCreditsError: If the estimate cannot be reserved; the
                provider is not called
            AIServiceError: Provider failure after the reservation was released
        """
        estimate = self._text_estimate(messages, model, max_tokens)
        allocation = await self._reserve(workspace_id, estimate)

        try:
            response = await provider.generate_text(messages, model, max_tokens, temperature)
            usage = response.metadata.usage or TokenUsage(
                prompt_tokens=estimate_message_tokens(messages),
                completion_tokens=estimate_tokens(response.content),
            )
            actual = self.calculator.calculate_usage_credits(usage, model)
        except BaseException as e:
            await self._abandon(
                workspace_id, estimate, allocation.allocation_id,
                provider.name, model, "text", e,
            )
            raise

        charged = await self._settle(workspace_id, estimate, actual, allocation.allocation_id)
        await self._record(
            workspace_id, provider.name, model, "text", usage, charged,
            "succeeded", response.metadata.request_id,
        )
        return GenerationResult(response, charged, allocation.allocation_id)

    async def stream_text(
        self,
        workspace_id: str,
        provider: TextGenerationProvider,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        handler: Optional[StreamingHandler] = None,
    ) -> GenerationResult[StreamResult]:
        """Stream a chat completion through ``handler`` and charge for it.

        Pass a handler with callbacks to observe chunks as they arrive, or to
        cancel the stream from elsewhere.

        Raises:
            StreamError: The stream failed; partial content was billed when
                ``bill_partial_streams`` is set
        """
        estimate = self._text_estimate(messages, model, max_tokens)
        allocation = await self._reserve(workspace_id, estimate)
        handler = handler or StreamingHandler(
            timeout_ms=self.stream_timeout_ms, max_buffer_size=self.max_buffer_size
        )
        prompt_tokens = estimate_message_tokens(messages)

        try:
            result = await handler.process_stream(
                provider.stream_text(messages, model, max_tokens, temperature)
            )
            metadata = result.metadata or ResponseMetadata(provider=provider.name, model=model)
            usage = metadata.usage or TokenUsage(prompt_tokens, estimate_tokens(result.content))
            actual = self.calculator.calculate_usage_credits(usage, model)
        except StreamError as e:
            usage = None
            credits = 0
            if self.bill_partial_streams and e.partial_content:
                usage = TokenUsage(prompt_tokens, estimate_tokens(e.partial_content))
                credits = self.calculator.calculate_usage_credits(usage, model)
            charged = await self._settle(
                workspace_id, estimate, credits, allocation.allocation_id
            )
            logger.warning(
                f"Stream for {workspace_id} failed with {e.code.value}, "
                f"charged {charged} credits for partial content"
            )
            await self._record(
                workspace_id, provider.name, model, "stream", usage, charged, "failed"
            )
            raise
        except BaseException as e:
            await self._abandon(
                workspace_id, estimate, allocation.allocation_id,
                provider.name, model, "stream", e,
            )
            raise

        charged = await self._settle(workspace_id, estimate, actual, allocation.allocation_id)
        await self._record(
            workspace_id, provider.name, model, "stream", usage, charged,
            "succeeded", metadata.request_id,
        )
        return GenerationResult(result, charged, allocation.allocation_id)

    async def generate_image(
        self,
        workspace_id: str,
        provider: ImageGenerationProvider,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        count: int = 1,
    ) -> GenerationResult[ImageResponse]:
        """Generate images at a fixed per-size price."""
        if count < 1:
            raise ValueError("count must be >= 1")
        cost = self.calculator.calculate_image_credits(size, count)
        return await self._fixed_price_call(
            workspace_id, provider.name, model, "image", cost,
            lambda: provider.generate_image(prompt, model, size, count),
        )

    async def synthesize_speech(
        self,
        workspace_id: str,
        provider: SpeechSynthesisProvider,
        text: str,
        model: str,
        voice: str = "alloy",
    ) -> GenerationResult[SpeechResponse]:
        cost = max(1, self.calculator.calculate_speech_credits(text))
        return await self._fixed_price_call(
            workspace_id, provider.name, model, "speech", cost,
            lambda: provider.synthesize_speech(text, model, voice),
        )

    async def _fixed_price_call(
        self,
        workspace_id: str,
        provider_name: str,
        model: str,
        operation: str,
        cost: int,
        call: Callable[[], Awaitable[R]],
    ) -> GenerationResult[R]:
        allocation = await self._reserve(workspace_id, cost)
        try:
            response = await call()
        except BaseException as e:
            await self._abandon(
                workspace_id, cost, allocation.allocation_id,
                provider_name, model, operation, e,
            )
            raise

        charged = await self._settle(workspace_id, cost, cost, allocation.allocation_id)
        await self._record(workspace_id, provider_name, model, operation, None, charged, "succeeded")
        return GenerationResult(response, charged, allocation.allocation_id)

    def _text_estimate(
        self, messages: List[Message], model: str, max_tokens: Optional[int]
    ) -> int:
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        # A reservation must be positive even for an empty prompt
        return max(1, self.calculator.estimate_text_credits(messages, model, max_tokens))

    async def _run_ledger(self, fn: Callable[..., T], *args) -> T:
        """Run a ledger call in a worker thread and wait for its outcome.

        A cancelled caller still waits for the call to finish before the
        cancellation propagates, so the caller always knows whether it
        committed.
        """
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    async def _reserve(self, workspace_id: str, amount: int) -> AllocationResult:
        task = asyncio.ensure_future(
            asyncio.to_thread(self.ledger.allocate_credits, workspace_id, amount)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            allocation = await task
            await self._run_ledger(
                self.ledger.release_credits, workspace_id, amount,
                allocation.allocation_id, REFERENCE_TYPE,
            )
            raise

    async def _settle(
        self, workspace_id: str, reserved: int, actual: int, reference_id: str
    ) -> int:
        """Settle the reservation at ``actual`` and return the credits charged.

        If the settlement fails it was rolled back, so the whole reservation
        is released instead.
        """
        try:
            result = await self._run_ledger(
                self.ledger.settle_credits, workspace_id, reserved, actual,
                reference_id, REFERENCE_TYPE,
            )
        except Exception:
            logger.error(f"Settlement of {reference_id} failed, releasing {reserved} credits")
            await self._run_ledger(
                self.ledger.release_credits, workspace_id, reserved,
                reference_id, REFERENCE_TYPE,
            )
            raise
        return result.amount

    async def _abandon(
        self,
        workspace_id: str,
        reserved: int,
        reference_id: str,
        provider: str,
        model: str,
        operation: str,
        error: BaseException,
    ) -> None:
        await self._run_ledger(
            self.ledger.release_credits, workspace_id, reserved,
            reference_id, REFERENCE_TYPE,
        )
        status = "cancelled" if isinstance(error, asyncio.CancelledError) else "failed"
        await self._run_ledger(
            insert_usage_event,
            self._usage_event(workspace_id, provider, model, operation, None, 0, status),
            self.db_path,
        )

    async def _record(
        self,
        workspace_id: str,
        provider: str,
        model: str,
        operation: str,
        usage: Optional[TokenUsage],
        credits: int,
        status: str,
        request_id: Optional[str] = None,
    ) -> None:
        event = self._usage_event(
            workspace_id, provider, model, operation, usage, credits, status, request_id
        )
        await asyncio.to_thread(insert_usage_event, event, self.db_path)

    @staticmethod
    def _usage_event(
        workspace_id: str,
        provider: str,
        model: str,
        operation: str,
        usage: Optional[TokenUsage],
        credits: int,
        status: str,
        request_id: Optional[str] = None,
    ) -> UsageEvent:
        return UsageEvent(
            timestamp=datetime.now(timezone.utc),
            workspace_id=workspace_id,
            provider=provider,
            model=model,
            operation=operation,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            credits_charged=credits,
            status=status,
            request_id=request_id,
        )
