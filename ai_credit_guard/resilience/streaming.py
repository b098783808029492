"""
Streaming response handling with inactivity timeout and cooperative cancellation.

A provider stream is an async iterator of ``TextStreamChunk``. The handler
pulls chunks one at a time; every pull is raced against the inactivity
timeout and the cancel signal, so a stalled or cancelled stream is abandoned
without waiting for the provider.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Callable, List, Optional

from ..core.token_counter import estimate_tokens
from ..providers.base import ResponseMetadata, TextStreamChunk

logger = logging.getLogger(__name__)

DEFAULT_STREAM_TIMEOUT_MS = 30000
DEFAULT_MAX_BUFFER_SIZE = 10000


class StreamErrorCode(str, Enum):
    TIMEOUT = "TIMEOUT"
    INTERRUPTED = "INTERRUPTED"
    CANCELLED = "CANCELLED"
    BUFFER_OVERFLOW = "BUFFER_OVERFLOW"
    UNKNOWN = "UNKNOWN"


class StreamError(Exception):
    """A stream ended abnormally.

    ``partial_content`` holds everything received before the failure so the
    caller can decide whether to bill for it.
    """

    def __init__(
        self,
        code: StreamErrorCode,
        message: str,
        partial_content: str = "",
        chunks_received: int = 0,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.partial_content = partial_content
        self.chunks_received = chunks_received


@dataclass(frozen=True)
class StreamProgress:
    chunks_received: int
    total_content: str
    estimated_tokens: int
    elapsed_ms: float


@dataclass(frozen=True)
class StreamResult:
    content: str
    chunks_received: int
    total_time_ms: float
    metadata: Optional[ResponseMetadata] = None


class StreamingHandler:
    """Consumes one stream, aggregating content and reporting progress.

    Args:
        timeout_ms: Maximum gap between chunks before the stream is aborted
        max_buffer_size: Maximum number of non-empty chunks kept
        on_chunk: Called with the text of every non-empty chunk
        on_progress: Called with a StreamProgress after every non-empty chunk
        on_complete: Called with the StreamResult on success
        on_error: Called with the StreamError before it is raised
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_STREAM_TIMEOUT_MS,
        max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE,
        on_chunk: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[StreamProgress], None]] = None,
        on_complete: Optional[Callable[[StreamResult], None]] = None,
        on_error: Optional[Callable[[StreamError], None]] = None,
    ):
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if max_buffer_size <= 0:
            raise ValueError("max_buffer_size must be > 0")

        self.timeout_ms = timeout_ms
        self.max_buffer_size = max_buffer_size
        self.on_chunk = on_chunk
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error

        self._buffer: List[str] = []
        self._chunks_received = 0
        self._start_time = 0.0
        self._cancelled = False
        self._cancel_signal: Optional[asyncio.Event] = None
        self._completed = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_completed(self) -> bool:
        return self._completed

    def cancel(self) -> None:
        """Request cancellation; ignored once the stream has completed."""
        if self._completed:
            return
        self._cancelled = True
        if self._cancel_signal is not None:
            self._cancel_signal.set()

    def get_aggregated_content(self) -> str:
        return "".join(self._buffer)

    def get_progress(self) -> StreamProgress:
        content = self.get_aggregated_content()
        return StreamProgress(
            chunks_received=self._chunks_received,
            total_content=content,
            estimated_tokens=estimate_tokens(content),
            elapsed_ms=self._elapsed_ms(),
        )

    async def process_stream(self, stream: AsyncIterable[TextStreamChunk]) -> StreamResult:
        """Consume ``stream`` to completion.

        Raises:
            StreamError: On timeout, cancellation, buffer overflow or any
                error raised by the stream itself
        """
        self._start_time = time.monotonic()
        # Created here so the event belongs to the loop running the stream
        self._cancel_signal = asyncio.Event()
        if self._cancelled:
            self._cancel_signal.set()
        iterator = stream.__aiter__()
        metadata = None

        try:
            while True:
                if self.is_cancelled:
                    raise self._error(StreamErrorCode.CANCELLED, "Stream was cancelled")

                try:
                    chunk = await self._next_chunk(iterator)
                except StopAsyncIteration:
                    break

                if chunk.content:
                    self._buffer.append(chunk.content)
                    self._chunks_received += 1

                    if len(self._buffer) > self.max_buffer_size:
                        raise self._error(
                            StreamErrorCode.BUFFER_OVERFLOW,
                            f"Buffer exceeded maximum size of {self.max_buffer_size} chunks",
                        )

                    if self.on_chunk:
                        self.on_chunk(chunk.content)
                    if self.on_progress:
                        self.on_progress(self.get_progress())

                if chunk.is_complete:
                    metadata = chunk.metadata
                    break
        except StreamError as e:
            self._report(e)
            raise
        except Exception as e:
            # A failure after content arrived means the provider dropped the stream
            code = StreamErrorCode.INTERRUPTED if self._chunks_received else StreamErrorCode.UNKNOWN
            error = self._error(code, str(e) or type(e).__name__)
            self._report(error)
            raise error from e

        self._completed = True
        result = StreamResult(
            content=self.get_aggregated_content(),
            chunks_received=self._chunks_received,
            total_time_ms=self._elapsed_ms(),
            metadata=metadata,
        )
        if self.on_complete:
            self.on_complete(result)
        return result

    async def _next_chunk(self, iterator: AsyncIterator[TextStreamChunk]) -> TextStreamChunk:
        pull = asyncio.ensure_future(iterator.__anext__())
        cancelled = asyncio.ensure_future(self._cancel_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {pull, cancelled},
                timeout=self.timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            pull.cancel()
            raise
        finally:
            cancelled.cancel()

        if pull in done:
            return pull.result()

        pull.cancel()
        if cancelled in done:
            raise self._error(StreamErrorCode.CANCELLED, "Stream was cancelled")
        raise self._error(
            StreamErrorCode.TIMEOUT,
            f"Stream timed out after {self.timeout_ms}ms of inactivity",
        )

    def _error(self, code: StreamErrorCode, message: str) -> StreamError:
        return StreamError(
            code,
            message,
            partial_content=self.get_aggregated_content(),
            chunks_received=self._chunks_received,
        )

    def _report(self, error: StreamError) -> None:
        logger.warning(
            f"Stream ended with {error.code.value} after "
            f"{error.chunks_received} chunks: {error.message}"
        )
        if self.on_error:
            self.on_error(error)

    def _elapsed_ms(self) -> float:
        if not self._start_time:
            return 0.0
        return (time.monotonic() - self._start_time) * 1000


async def aggregate_stream(
    stream: AsyncIterable[TextStreamChunk],
    handler: Optional[StreamingHandler] = None,
) -> str:
    """Collect a whole stream into one string."""
    result = await (handler or StreamingHandler()).process_stream(stream)
    return result.content
