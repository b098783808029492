"""
OpenAI provider.

Chat completions (plain and streamed), image generation and speech synthesis
through the async OpenAI client. SDK errors propagate unchanged; the
resilience layer translates them.
"""

from typing import AsyncIterator, List, Optional

from openai import AsyncOpenAI

from ..core.token_counter import TokenUsage
from .base import (
    ImageResponse,
    Message,
    ResponseMetadata,
    SpeechResponse,
    TextResponse,
    TextStreamChunk,
)


class OpenAIProvider:
    """OpenAI implementation of the text, image and speech capabilities.

    Args:
        client: Preconfigured client; one reading OPENAI_API_KEY from the
            environment is created when omitted
        stream_usage: Ask for token usage on the last streamed chunk
    """

    name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, stream_usage: bool = True):
        self.client = client or AsyncOpenAI()
        self.stream_usage = stream_usage

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse:
        """Create a chat completion.

        Raises:
            ValueError: If messages is empty or the response has no usage
            openai.OpenAIError: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = await self.client.chat.completions.create(
            **self._chat_params(messages, model, max_tokens, temperature)
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        choice = response.choices[0]
        return TextResponse(
            content=choice.message.content or "",
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=TokenUsage(
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                ),
                finish_reason=choice.finish_reason,
                request_id=response.id,
            ),
        )

    async def stream_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextStreamChunk]:
        """Stream a chat completion; the last chunk carries token usage."""
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params = self._chat_params(messages, model, max_tokens, temperature)
        if self.stream_usage:
            params["stream_options"] = {"include_usage": True}
        stream = await self.client.chat.completions.create(**params, stream=True)

        usage = None
        finish_reason = None
        request_id = None
        async for chunk in stream:
            request_id = chunk.id
            if chunk.usage:
                usage = TokenUsage(
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.delta and choice.delta.content:
                yield TextStreamChunk(content=choice.delta.content)
            if choice.finish_reason:
                finish_reason = choice.finish_reason

        yield TextStreamChunk(
            content="",
            is_complete=True,
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=usage,
                finish_reason=finish_reason,
                request_id=request_id,
            ),
        )

    async def generate_image(
        self,
        prompt: str,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        count: int = 1,
    ) -> ImageResponse:
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        response = await self.client.images.generate(
            model=model, prompt=prompt, size=size, n=count
        )
        return ImageResponse(
            images=[item.url or item.b64_json for item in response.data],
            size=size,
            metadata=ResponseMetadata(provider=self.name, model=model),
        )

    async def synthesize_speech(
        self,
        text: str,
        model: str = "tts-1",
        voice: str = "alloy",
    ) -> SpeechResponse:
        if not text:
            raise ValueError("text is required and cannot be empty")

        response = await self.client.audio.speech.create(
            model=model, voice=voice, input=text
        )
        return SpeechResponse(
            audio=response.content,
            characters=len(text),
            metadata=ResponseMetadata(provider=self.name, model=model),
        )

    @staticmethod
    def _chat_params(
        messages: List[Message],
        model: str,
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> dict:
        params = {"model": model, "messages": messages}
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature
        return params
