"""
Unit tests for the OpenAI, Anthropic, Google and Mistral providers.

The SDK clients are replaced with mocks returning objects shaped like the
SDK responses.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_credit_guard.providers.anthropic_provider import (
    DEFAULT_MAX_TOKENS,
    AnthropicProvider,
    split_system_messages,
)
from ai_credit_guard.providers.base import (
    ImageGenerationProvider,
    SpeechSynthesisProvider,
    TextGenerationProvider,
)
from ai_credit_guard.providers.google_provider import (
    GoogleProvider,
    response_text,
    to_gemini_contents,
)
from ai_credit_guard.providers.mistral_provider import MistralProvider
from ai_credit_guard.providers.openai_provider import OpenAIProvider
from ai_credit_guard.providers.resilient import ResilientProvider
from ai_credit_guard.resilience.circuit_breaker import CircuitBreaker
from ai_credit_guard.resilience.errors import AIAuthenticationError, AIContentFilterError
from ai_credit_guard.resilience.retry import RetryConfig

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hello"},
]


def openai_completion(content="Hi there", usage=True):
    return SimpleNamespace(
        id="chatcmpl-1",
        choices=[SimpleNamespace(
            message=SimpleNamespace(content=content),
            finish_reason="stop",
        )],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=4) if usage else None,
    )


def openai_chunk(content=None, finish_reason=None, usage=None, choices=True):
    return SimpleNamespace(
        id="chatcmpl-2",
        choices=[SimpleNamespace(
            delta=SimpleNamespace(content=content),
            finish_reason=finish_reason,
        )] if choices else [],
        usage=usage,
    )


async def async_iter(items):
    for item in items:
        yield item


async def collect(stream):
    return [chunk async for chunk in stream]


class TestOpenAIProvider:

    def setup_method(self):
        self.client = MagicMock()
        self.client.chat.completions.create = AsyncMock()
        self.client.images.generate = AsyncMock()
        self.client.audio.speech.create = AsyncMock()
        self.provider = OpenAIProvider(client=self.client)

    def test_satisfies_capabilities(self):
        assert isinstance(self.provider, TextGenerationProvider)
        assert isinstance(self.provider, ImageGenerationProvider)
        assert isinstance(self.provider, SpeechSynthesisProvider)

    @pytest.mark.asyncio
    async def test_generate_text(self):
        self.client.chat.completions.create.return_value = openai_completion()

        response = await self.provider.generate_text(MESSAGES, "gpt-4o", max_tokens=100)

        assert response.content == "Hi there"
        assert response.metadata.provider == "openai"
        assert response.metadata.usage.total_tokens == 16
        assert response.metadata.finish_reason == "stop"
        assert response.metadata.request_id == "chatcmpl-1"
        self.client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4o", messages=MESSAGES, max_tokens=100
        )

    @pytest.mark.asyncio
    async def test_missing_usage(self):
        self.client.chat.completions.create.return_value = openai_completion(usage=False)

        with pytest.raises(ValueError, match="missing usage"):
            await self.provider.generate_text(MESSAGES, "gpt-4o")

    @pytest.mark.asyncio
    async def test_empty_messages(self):
        with pytest.raises(ValueError):
            await self.provider.generate_text([], "gpt-4o")
        self.client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sdk_errors_propagate(self):
        self.client.chat.completions.create.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await self.provider.generate_text(MESSAGES, "gpt-4o")

    @pytest.mark.asyncio
    async def test_stream_text(self):
        self.client.chat.completions.create.return_value = async_iter([
            openai_chunk("Hel"),
            openai_chunk("lo"),
            openai_chunk(None, finish_reason="stop"),
            openai_chunk(
                choices=False,
                usage=SimpleNamespace(prompt_tokens=12, completion_tokens=2),
            ),
        ])

        chunks = await collect(self.provider.stream_text(MESSAGES, "gpt-4o"))

        assert [c.content for c in chunks] == ["Hel", "lo", ""]
        final = chunks[-1]
        assert final.is_complete is True
        assert final.metadata.usage.total_tokens == 14
        assert final.metadata.finish_reason == "stop"
        kwargs = self.client.chat.completions.create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_generate_image(self):
        self.client.images.generate.return_value = SimpleNamespace(data=[
            SimpleNamespace(url="https://img/1.png", b64_json=None),
            SimpleNamespace(url=None, b64_json="aGVsbG8="),
        ])

        response = await self.provider.generate_image("a cat", "dall-e-3", "512x512", 2)

        assert response.images == ["https://img/1.png", "aGVsbG8="]
        assert response.size == "512x512"
        self.client.images.generate.assert_awaited_once_with(
            model="dall-e-3", prompt="a cat", size="512x512", n=2
        )

    @pytest.mark.asyncio
    async def test_synthesize_speech(self):
        self.client.audio.speech.create.return_value = SimpleNamespace(content=b"ID3")

        response = await self.provider.synthesize_speech("Hello", "tts-1", "nova")

        assert response.audio == b"ID3"
        assert response.characters == 5
        assert response.format == "mp3"


class FakeAnthropicStream:
    def __init__(self, texts, final):
        self._texts = texts
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        return async_iter(self._texts)

    async def get_final_message(self):
        return self._final


def anthropic_message(text="Hi", input_tokens=9, output_tokens=3):
    return SimpleNamespace(
        id="msg_1",
        content=[
            SimpleNamespace(type="text", text=text),
            SimpleNamespace(type="tool_use", text=None),
        ],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="end_turn",
    )


class TestAnthropicProvider:

    def setup_method(self):
        self.client = MagicMock()
        self.client.messages.create = AsyncMock()
        self.provider = AnthropicProvider(client=self.client)

    def test_split_system_messages(self):
        system, rest = split_system_messages(MESSAGES)
        assert system == "Be brief."
        assert rest == [{"role": "user", "content": "Hello"}]

    def test_split_without_system(self):
        system, rest = split_system_messages(MESSAGES[1:])
        assert system is None
        assert rest == MESSAGES[1:]

    def test_text_capability_only(self):
        assert isinstance(self.provider, TextGenerationProvider)
        assert not isinstance(self.provider, ImageGenerationProvider)

    @pytest.mark.asyncio
    async def test_generate_text(self):
        self.client.messages.create.return_value = anthropic_message()

        response = await self.provider.generate_text(MESSAGES, "claude-3-haiku", temperature=0.2)

        assert response.content == "Hi"
        assert response.metadata.usage.prompt_tokens == 9
        assert response.metadata.usage.completion_tokens == 3
        assert response.metadata.finish_reason == "end_turn"
        self.client.messages.create.assert_awaited_once_with(
            model="claude-3-haiku",
            messages=[{"role": "user", "content": "Hello"}],
            max_tokens=DEFAULT_MAX_TOKENS,
            system="Be brief.",
            temperature=0.2,
        )

    @pytest.mark.asyncio
    async def test_stream_text(self):
        self.client.messages.stream = MagicMock(
            return_value=FakeAnthropicStream(["Hi", "", " there"], anthropic_message(output_tokens=2))
        )

        chunks = await collect(self.provider.stream_text(MESSAGES, "claude-3-haiku", max_tokens=50))

        assert [c.content for c in chunks] == ["Hi", " there", ""]
        assert chunks[-1].is_complete is True
        assert chunks[-1].metadata.usage.total_tokens == 11
        assert self.client.messages.stream.call_args.kwargs["max_tokens"] == 50


def gemini_response(text="Hi", prompt_tokens=7, output_tokens=2, finish="STOP", blocked=None):
    candidates = [SimpleNamespace(
        content=SimpleNamespace(parts=[SimpleNamespace(text=text)]),
        finish_reason=SimpleNamespace(name=finish),
    )] if blocked is None else []
    return SimpleNamespace(
        candidates=candidates,
        usage_metadata=SimpleNamespace(
            prompt_token_count=prompt_tokens, candidates_token_count=output_tokens
        ),
        prompt_feedback=SimpleNamespace(
            block_reason=SimpleNamespace(name=blocked) if blocked else None
        ),
    )


class TestGoogleProvider:

    def setup_method(self):
        self.model = MagicMock()
        self.model.generate_content_async = AsyncMock()
        self.model_factory = MagicMock(return_value=self.model)
        self.provider = GoogleProvider(model_factory=self.model_factory)

    def test_to_gemini_contents(self):
        system, contents = to_gemini_contents(MESSAGES + [{"role": "assistant", "content": "Hey"}])

        assert system == "Be brief."
        assert contents == [
            {"role": "user", "parts": ["Hello"]},
            {"role": "model", "parts": ["Hey"]},
        ]

    def test_response_text_without_candidates(self):
        assert response_text(gemini_response(blocked="SAFETY")) == ""

    def test_text_capability_only(self):
        assert isinstance(self.provider, TextGenerationProvider)
        assert not isinstance(self.provider, ImageGenerationProvider)

    @pytest.mark.asyncio
    async def test_generate_text(self):
        self.model.generate_content_async.return_value = gemini_response()

        response = await self.provider.generate_text(
            MESSAGES, "gemini-1.5-flash", max_tokens=64, temperature=0.5
        )

        assert response.content == "Hi"
        assert response.metadata.provider == "google"
        assert response.metadata.usage.total_tokens == 9
        assert response.metadata.finish_reason == "STOP"
        self.model_factory.assert_called_once_with(
            model_name="gemini-1.5-flash", system_instruction="Be brief."
        )
        self.model.generate_content_async.assert_awaited_once_with(
            [{"role": "user", "parts": ["Hello"]}],
            generation_config={"max_output_tokens": 64, "temperature": 0.5},
        )

    @pytest.mark.asyncio
    async def test_blocked_prompt(self):
        self.model.generate_content_async.return_value = gemini_response(blocked="SAFETY")

        with pytest.raises(ValueError, match="blocked"):
            await self.provider.generate_text(MESSAGES, "gemini-1.5-flash")

    @pytest.mark.asyncio
    async def test_stream_text(self):
        self.model.generate_content_async.return_value = async_iter([
            gemini_response("Hel", output_tokens=1),
            gemini_response("", output_tokens=1),
            gemini_response("lo", output_tokens=2),
        ])

        chunks = await collect(self.provider.stream_text(MESSAGES, "gemini-1.5-flash"))

        assert [c.content for c in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].is_complete is True
        assert chunks[-1].metadata.usage.total_tokens == 9
        assert self.model.generate_content_async.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        (ValueError("Prompt blocked by Google safety filters: SAFETY"), AIContentFilterError),
        (RuntimeError("400 API key not valid. Please pass a valid API key."), AIAuthenticationError),
    ])
    async def test_errors_translated_when_wrapped(self, error, expected):
        self.model.generate_content_async.side_effect = error
        provider = ResilientProvider(self.provider, CircuitBreaker(), RetryConfig(max_retries=1))

        with pytest.raises(expected):
            await provider.generate_text(MESSAGES, "gemini-1.5-flash")


class TestMistralProvider:

    def setup_method(self):
        self.client = MagicMock()
        self.client.chat.completions.create = AsyncMock()
        self.provider = MistralProvider(client=self.client)

    def test_text_capability_only(self):
        assert isinstance(self.provider, TextGenerationProvider)
        assert not isinstance(self.provider, ImageGenerationProvider)
        assert not isinstance(self.provider, SpeechSynthesisProvider)

    @pytest.mark.asyncio
    async def test_generate_text(self):
        self.client.chat.completions.create.return_value = openai_completion("Bonjour")

        response = await self.provider.generate_text(MESSAGES, "mistral-small-latest")

        assert response.content == "Bonjour"
        assert response.metadata.provider == "mistral"
        assert response.metadata.usage.total_tokens == 16

    @pytest.mark.asyncio
    async def test_stream_text(self):
        self.client.chat.completions.create.return_value = async_iter([
            openai_chunk("Bon"),
            openai_chunk("jour", finish_reason="stop",
                         usage=SimpleNamespace(prompt_tokens=5, completion_tokens=2)),
        ])

        chunks = await collect(self.provider.stream_text(MESSAGES, "mistral-small-latest"))

        assert [c.content for c in chunks] == ["Bon", "jour", ""]
        assert chunks[-1].metadata.provider == "mistral"
        assert chunks[-1].metadata.usage.total_tokens == 7
        kwargs = self.client.chat.completions.create.await_args.kwargs
        assert "stream_options" not in kwargs

    @pytest.mark.asyncio
    async def test_errors_translated_when_wrapped(self):
        self.client.chat.completions.create.side_effect = RuntimeError("Unauthorized")
        provider = ResilientProvider(self.provider, CircuitBreaker(), RetryConfig(max_retries=1))

        with pytest.raises(AIAuthenticationError):
            await provider.generate_text(MESSAGES, "mistral-small-latest")
