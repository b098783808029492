"""
Integration tests for credit-metered generation.

Runs against a real SQLite ledger with fake providers.
"""

import asyncio
import os
import shutil
import sqlite3
import tempfile
from unittest.mock import AsyncMock, Mock

import pytest

from ai_credit_guard.core.credit_calculator import CreditCalculator
from ai_credit_guard.core.generation import GenerationService
from ai_credit_guard.core.ledger import CreditLedger, InsufficientCreditsError
from ai_credit_guard.core.token_counter import TokenUsage
from ai_credit_guard.providers.base import (
    ImageResponse,
    ResponseMetadata,
    SpeechResponse,
    TextResponse,
    TextStreamChunk,
)
from ai_credit_guard.resilience.errors import AIProviderUnavailableError
from ai_credit_guard.resilience.streaming import StreamError, StreamErrorCode, StreamingHandler
from ai_credit_guard.storage.models import TransactionType
from ai_credit_guard.storage.repository import (
    WorkspaceRepository,
    fetch_recent_usage_events,
    initialize_schema,
)

# 400 characters estimate to 100 prompt tokens
MESSAGES = [{"role": "user", "content": "a" * 400}]
MODEL = "gpt-4"  # 30 credits per 1K tokens


def text_response(prompt_tokens=100, completion_tokens=100):
    return TextResponse(
        content="answer",
        metadata=ResponseMetadata(
            provider="fake",
            model=MODEL,
            usage=TokenUsage(prompt_tokens, completion_tokens),
            request_id="req_42",
        ),
    )


def text_provider(**kwargs):
    provider = Mock()
    provider.name = "fake"
    provider.generate_text = AsyncMock(**kwargs)
    return provider


class StreamProvider:
    name = "fake"

    def __init__(self, texts, fail=False, usage=None):
        self.texts = texts
        self.fail = fail
        self.usage = usage

    async def stream_text(self, messages, model, max_tokens=None, temperature=None):
        for text in self.texts:
            yield TextStreamChunk(content=text)
        if self.fail:
            raise AIProviderUnavailableError(self.name)
        yield TextStreamChunk(
            content="",
            is_complete=True,
            metadata=ResponseMetadata(provider=self.name, model=model, usage=self.usage),
        )


class GenerationTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "generation.db")
        initialize_schema(self.db_path)
        self.workspaces = WorkspaceRepository(self.db_path)
        self.workspaces.create_workspace("Acme", 1000, workspace_id="ws_1")
        self.ledger = CreditLedger(self.db_path)
        self.service = GenerationService(self.ledger, CreditCalculator(), db_path=self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def balance(self, workspace_id="ws_1"):
        return self.ledger.get_credit_balance(workspace_id)

    def events(self):
        return fetch_recent_usage_events(db_path=self.db_path)


class TestGenerateText(GenerationTestCase):

    @pytest.mark.asyncio
    async def test_reserves_estimate_and_charges_actual(self):
        provider = text_provider(return_value=text_response(100, 100))

        result = await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        # 200 tokens at 30 credits per 1K
        assert result.credits_charged == 6
        assert result.response.content == "answer"
        balance = self.balance()
        assert balance.total == 994
        assert balance.allocated == 0

        transactions = self.ledger.list_transactions("ws_1")
        assert [(tx.type, tx.amount) for tx in transactions] == [
            (TransactionType.RELEASE, 24),
            (TransactionType.CONSUMPTION, -6),
            (TransactionType.ALLOCATION, -30),
        ]
        assert transactions[0].reference_id == result.allocation_id

    @pytest.mark.asyncio
    async def test_records_usage_event(self):
        provider = text_provider(return_value=text_response(100, 100))

        await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        event = self.events()[0]
        assert event.workspace_id == "ws_1"
        assert event.provider == "fake"
        assert event.operation == "text"
        assert event.total_tokens == 200
        assert event.credits_charged == 6
        assert event.status == "succeeded"
        assert event.request_id == "req_42"

    @pytest.mark.asyncio
    async def test_shortfall_is_charged_when_covered(self):
        provider = text_provider(return_value=text_response(100, 1900))

        result = await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        assert result.credits_charged == 60
        assert self.balance().total == 940
        assert self.balance().allocated == 0

    @pytest.mark.asyncio
    async def test_shortfall_capped_at_reservation(self):
        self.workspaces.create_workspace("Small", 40, workspace_id="ws_small")
        provider = text_provider(return_value=text_response(100, 1900))

        result = await self.service.generate_text(
            "ws_small", provider, MESSAGES, MODEL, max_tokens=900
        )

        assert result.credits_charged == 30
        balance = self.balance("ws_small")
        assert balance.total == 10
        assert balance.allocated == 0

    @pytest.mark.asyncio
    async def test_insufficient_credits_skips_provider(self):
        self.workspaces.create_workspace("Poor", 5, workspace_id="ws_poor")
        provider = text_provider(return_value=text_response())

        with pytest.raises(InsufficientCreditsError):
            await self.service.generate_text("ws_poor", provider, MESSAGES, MODEL, max_tokens=900)

        provider.generate_text.assert_not_awaited()
        assert self.events() == []

    @pytest.mark.asyncio
    async def test_provider_failure_releases_reservation(self):
        provider = text_provider(side_effect=AIProviderUnavailableError("fake"))

        with pytest.raises(AIProviderUnavailableError):
            await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        balance = self.balance()
        assert balance.total == 1000
        assert balance.allocated == 0
        event = self.events()[0]
        assert event.status == "failed"
        assert event.credits_charged == 0

    @pytest.mark.asyncio
    async def test_missing_usage_falls_back_to_estimate(self):
        response = TextResponse(
            content="b" * 400,
            metadata=ResponseMetadata(provider="fake", model=MODEL),
        )
        provider = text_provider(return_value=response)

        result = await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        assert result.credits_charged == 6

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        with pytest.raises(ValueError):
            await self.service.generate_text("ws_1", text_provider(), [], MODEL)

    @pytest.mark.asyncio
    async def test_concurrent_generations_settle_cleanly(self):
        provider = text_provider(return_value=text_response(100, 100))

        results = await asyncio.gather(*[
            self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)
            for _ in range(5)
        ])

        assert sum(r.credits_charged for r in results) == 30
        balance = self.balance()
        assert balance.total == 970
        assert balance.allocated == 0


class TestStreamText(GenerationTestCase):

    @pytest.mark.asyncio
    async def test_charges_reported_usage(self):
        provider = StreamProvider(["Hel", "lo"], usage=TokenUsage(100, 100))
        on_chunk = Mock()

        result = await self.service.stream_text(
            "ws_1", provider, MESSAGES, MODEL, max_tokens=900,
            handler=StreamingHandler(on_chunk=on_chunk),
        )

        assert result.response.content == "Hello"
        assert result.credits_charged == 6
        assert on_chunk.call_count == 2
        assert self.balance().total == 994
        assert self.events()[0].operation == "stream"

    @pytest.mark.asyncio
    async def test_estimates_usage_without_metadata(self):
        provider = StreamProvider(["c" * 400])

        result = await self.service.stream_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        # 100 prompt + 100 completion tokens estimated
        assert result.credits_charged == 6

    @pytest.mark.asyncio
    async def test_failed_stream_bills_partial_content(self):
        provider = StreamProvider(["d" * 40], fail=True)

        with pytest.raises(StreamError) as exc_info:
            await self.service.stream_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        assert exc_info.value.code == StreamErrorCode.INTERRUPTED
        # 110 tokens at 30 credits per 1K, rounded up
        balance = self.balance()
        assert balance.total == 996
        assert balance.allocated == 0
        event = self.events()[0]
        assert event.status == "failed"
        assert event.credits_charged == 4

    @pytest.mark.asyncio
    async def test_partial_billing_disabled(self):
        service = GenerationService(
            self.ledger, CreditCalculator(), db_path=self.db_path, bill_partial_streams=False
        )
        provider = StreamProvider(["d" * 40], fail=True)

        with pytest.raises(StreamError):
            await service.stream_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        balance = self.balance()
        assert balance.total == 1000
        assert balance.allocated == 0


class TestFixedPriceGeneration(GenerationTestCase):

    @pytest.mark.asyncio
    async def test_image_priced_by_size(self):
        provider = Mock()
        provider.name = "fake"
        provider.generate_image = AsyncMock(return_value=ImageResponse(
            images=["u1", "u2"], size="1024x1024",
            metadata=ResponseMetadata(provider="fake", model="dall-e-3"),
        ))

        result = await self.service.generate_image("ws_1", provider, "a cat", "dall-e-3", count=2)

        assert result.credits_charged == 80
        assert self.balance().total == 920
        assert self.events()[0].operation == "image"

    @pytest.mark.asyncio
    async def test_image_failure_releases(self):
        provider = Mock()
        provider.name = "fake"
        provider.generate_image = AsyncMock(side_effect=AIProviderUnavailableError("fake"))

        with pytest.raises(AIProviderUnavailableError):
            await self.service.generate_image("ws_1", provider, "a cat", "dall-e-3")

        assert self.balance().total == 1000
        assert self.balance().allocated == 0

    @pytest.mark.asyncio
    async def test_image_count_validated(self):
        provider = Mock()
        provider.name = "fake"
        with pytest.raises(ValueError):
            await self.service.generate_image("ws_1", provider, "a cat", "dall-e-3", count=0)

    @pytest.mark.asyncio
    async def test_speech_costs_at_least_one_credit(self):
        provider = Mock()
        provider.name = "fake"
        provider.synthesize_speech = AsyncMock(return_value=SpeechResponse(
            audio=b"...", characters=5,
            metadata=ResponseMetadata(provider="fake", model="tts-1"),
        ))

        result = await self.service.synthesize_speech("ws_1", provider, "Hello", "tts-1")

        assert result.credits_charged == 1
        assert self.balance().total == 999


class SlowProvider:
    name = "slow"

    async def generate_text(self, messages, model, max_tokens=None, temperature=None):
        await asyncio.sleep(10)
        return text_response()

    async def stream_text(self, messages, model, max_tokens=None, temperature=None):
        yield TextStreamChunk(content="partial")
        await asyncio.sleep(10)
        yield TextStreamChunk(content="never")

    async def generate_image(self, prompt, model, size="1024x1024", count=1):
        await asyncio.sleep(10)


class TestCancelledGeneration(GenerationTestCase):

    @pytest.mark.asyncio
    async def test_timed_out_text_releases_reservation(self):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                self.service.generate_text("ws_1", SlowProvider(), MESSAGES, MODEL), 0.3
            )

        balance = self.balance()
        assert balance.allocated == 0
        assert balance.total == 1000
        event = self.events()[0]
        assert event.status == "cancelled"
        assert event.credits_charged == 0

    @pytest.mark.asyncio
    async def test_cancelled_stream_releases_reservation(self):
        task = asyncio.ensure_future(
            self.service.stream_text("ws_1", SlowProvider(), MESSAGES, MODEL, max_tokens=900)
        )
        await asyncio.sleep(0.3)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        balance = self.balance()
        assert balance.allocated == 0
        assert balance.total == 1000

    @pytest.mark.asyncio
    async def test_timed_out_image_releases_reservation(self):
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                self.service.generate_image("ws_1", SlowProvider(), "a cat", "dall-e-3"), 0.3
            )

        assert self.balance().allocated == 0
        assert self.balance().total == 1000


class TestSettlementFailure(GenerationTestCase):

    @pytest.mark.asyncio
    async def test_failed_settlement_releases_reservation(self):
        self.ledger.settle_credits = Mock(side_effect=sqlite3.OperationalError("disk I/O error"))
        provider = text_provider(return_value=text_response(100, 100))

        with pytest.raises(sqlite3.OperationalError):
            await self.service.generate_text("ws_1", provider, MESSAGES, MODEL, max_tokens=900)

        balance = self.balance()
        assert balance.allocated == 0
        assert balance.total == 1000
