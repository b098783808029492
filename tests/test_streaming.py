"""
Unit tests for stream handling.

Streams are built from small async generators so timing, cancellation and
provider failures can be driven precisely.
"""

import asyncio
from unittest.mock import Mock

import pytest

from ai_credit_guard.core.token_counter import TokenUsage
from ai_credit_guard.providers.base import ResponseMetadata, TextStreamChunk
from ai_credit_guard.resilience.streaming import (
    StreamError,
    StreamErrorCode,
    StreamingHandler,
    aggregate_stream,
)

METADATA = ResponseMetadata(
    provider="openai", model="gpt-4o", usage=TokenUsage(10, 3), request_id="req_1"
)


async def chunks(*texts, complete=True, delay=0.0):
    for text in texts:
        if delay:
            await asyncio.sleep(delay)
        yield TextStreamChunk(content=text)
    if complete:
        yield TextStreamChunk(content="", is_complete=True, metadata=METADATA)


async def failing_after(*texts):
    for text in texts:
        yield TextStreamChunk(content=text)
    raise ConnectionResetError("connection reset by peer")


async def stalls_after(*texts):
    for text in texts:
        yield TextStreamChunk(content=text)
    await asyncio.sleep(10)
    yield TextStreamChunk(content="never")


class TestProcessStream:

    @pytest.mark.asyncio
    async def test_aggregates_content(self):
        handler = StreamingHandler()
        result = await handler.process_stream(chunks("Hel", "lo", " world"))

        assert result.content == "Hello world"
        assert result.chunks_received == 3
        assert result.metadata == METADATA
        assert result.total_time_ms >= 0
        assert handler.is_completed is True

    @pytest.mark.asyncio
    async def test_empty_chunks_not_counted(self):
        result = await StreamingHandler().process_stream(chunks("a", "", "b"))
        assert result.chunks_received == 2
        assert result.content == "ab"

    @pytest.mark.asyncio
    async def test_stream_without_final_chunk(self):
        result = await StreamingHandler().process_stream(chunks("a", "b", complete=False))
        assert result.content == "ab"
        assert result.metadata is None

    @pytest.mark.asyncio
    async def test_callbacks(self):
        on_chunk = Mock()
        on_progress = Mock()
        on_complete = Mock()
        handler = StreamingHandler(
            on_chunk=on_chunk, on_progress=on_progress, on_complete=on_complete
        )

        result = await handler.process_stream(chunks("abcd", "efgh"))

        assert [c.args[0] for c in on_chunk.call_args_list] == ["abcd", "efgh"]
        last_progress = on_progress.call_args_list[-1].args[0]
        assert last_progress.chunks_received == 2
        assert last_progress.total_content == "abcdefgh"
        assert last_progress.estimated_tokens == 2
        on_complete.assert_called_once_with(result)

    @pytest.mark.asyncio
    async def test_inactivity_timeout(self):
        on_error = Mock()
        handler = StreamingHandler(timeout_ms=50, on_error=on_error)

        with pytest.raises(StreamError) as exc_info:
            await handler.process_stream(stalls_after("partial"))

        error = exc_info.value
        assert error.code == StreamErrorCode.TIMEOUT
        assert error.partial_content == "partial"
        assert error.chunks_received == 1
        on_error.assert_called_once_with(error)
        assert handler.is_completed is False

    @pytest.mark.asyncio
    async def test_slow_but_steady_stream_completes(self):
        handler = StreamingHandler(timeout_ms=200)
        result = await handler.process_stream(chunks("a", "b", "c", delay=0.05))
        assert result.content == "abc"

    @pytest.mark.asyncio
    async def test_interrupted_after_content(self):
        handler = StreamingHandler()

        with pytest.raises(StreamError) as exc_info:
            await handler.process_stream(failing_after("so far"))

        assert exc_info.value.code == StreamErrorCode.INTERRUPTED
        assert exc_info.value.partial_content == "so far"
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_failure_before_content_is_unknown(self):
        with pytest.raises(StreamError) as exc_info:
            await StreamingHandler().process_stream(failing_after())
        assert exc_info.value.code == StreamErrorCode.UNKNOWN

    @pytest.mark.asyncio
    async def test_buffer_overflow(self):
        handler = StreamingHandler(max_buffer_size=2)

        with pytest.raises(StreamError) as exc_info:
            await handler.process_stream(chunks("a", "b", "c"))

        assert exc_info.value.code == StreamErrorCode.BUFFER_OVERFLOW
        assert exc_info.value.partial_content == "abc"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_chunk(self):
        handler = StreamingHandler(timeout_ms=5000)
        task = asyncio.ensure_future(handler.process_stream(stalls_after("first")))
        await asyncio.sleep(0.05)

        handler.cancel()

        with pytest.raises(StreamError) as exc_info:
            await task
        assert exc_info.value.code == StreamErrorCode.CANCELLED
        assert exc_info.value.partial_content == "first"
        assert handler.is_cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_from_chunk_callback(self):
        handler = StreamingHandler()
        handler.on_chunk = lambda text: handler.cancel()

        with pytest.raises(StreamError) as exc_info:
            await handler.process_stream(chunks("a", "b", "c"))

        assert exc_info.value.code == StreamErrorCode.CANCELLED
        assert exc_info.value.chunks_received == 1

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_ignored(self):
        handler = StreamingHandler()
        await handler.process_stream(chunks("done"))

        handler.cancel()

        assert handler.is_cancelled is False
        assert handler.is_completed is True

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        handler = StreamingHandler()
        handler.cancel()

        with pytest.raises(StreamError) as exc_info:
            await handler.process_stream(chunks("a"))

        assert exc_info.value.code == StreamErrorCode.CANCELLED
        assert exc_info.value.chunks_received == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self):
        handler = StreamingHandler(timeout_ms=5000)
        task = asyncio.ensure_future(handler.process_stream(stalls_after("first")))
        await asyncio.sleep(0.05)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert handler.is_completed is False


class TestEventLoopBinding:

    def test_handler_created_outside_running_loop(self):
        handler = StreamingHandler(timeout_ms=5000)

        first = asyncio.run(handler.process_stream(chunks("a", "b")))
        second = asyncio.run(StreamingHandler().process_stream(chunks("c")))

        assert first.content == "ab"
        assert second.content == "c"


class TestHelpers:

    @pytest.mark.asyncio
    async def test_aggregate_stream(self):
        assert await aggregate_stream(chunks("x", "y")) == "xy"

    @pytest.mark.asyncio
    async def test_progress_before_start(self):
        progress = StreamingHandler().get_progress()
        assert progress.chunks_received == 0
        assert progress.total_content == ""
        assert progress.elapsed_ms == 0.0

    @pytest.mark.asyncio
    async def test_invalid_limits(self):
        with pytest.raises(ValueError):
            StreamingHandler(timeout_ms=0)
        with pytest.raises(ValueError):
            StreamingHandler(max_buffer_size=0)
