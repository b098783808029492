"""
Anthropic provider.

Messages API, plain and streamed, through the async Anthropic client.
"""

from typing import AsyncIterator, List, Optional, Tuple

from anthropic import AsyncAnthropic

from ..core.token_counter import TokenUsage
from .base import Message, ResponseMetadata, TextResponse, TextStreamChunk

# The Messages API requires max_tokens on every request
DEFAULT_MAX_TOKENS = 1024


def split_system_messages(messages: List[Message]) -> Tuple[Optional[str], List[Message]]:
    """Move system messages into the separate ``system`` parameter."""
    system = [m["content"] for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return ("\n\n".join(system) if system else None), rest


class AnthropicProvider:
    """Anthropic implementation of the text generation capability."""

    name = "anthropic"

    def __init__(self, client: Optional[AsyncAnthropic] = None):
        self.client = client or AsyncAnthropic()

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse:
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = await self.client.messages.create(
            **self._message_params(messages, model, max_tokens, temperature)
        )

        content = "".join(
            block.text for block in response.content if block.type == "text"
        )
        return TextResponse(
            content=content,
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=TokenUsage(
                    prompt_tokens=response.usage.input_tokens,
                    completion_tokens=response.usage.output_tokens,
                ),
                finish_reason=response.stop_reason,
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
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        async with self.client.messages.stream(
            **self._message_params(messages, model, max_tokens, temperature)
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield TextStreamChunk(content=text)
            final = await stream.get_final_message()

        yield TextStreamChunk(
            content="",
            is_complete=True,
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=TokenUsage(
                    prompt_tokens=final.usage.input_tokens,
                    completion_tokens=final.usage.output_tokens,
                ),
                finish_reason=final.stop_reason,
                request_id=final.id,
            ),
        )

    @staticmethod
    def _message_params(
        messages: List[Message],
        model: str,
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> dict:
        system, conversation = split_system_messages(messages)
        params = {
            "model": model,
            "messages": conversation,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            params["system"] = system
        if temperature is not None:
            params["temperature"] = temperature
        return params
