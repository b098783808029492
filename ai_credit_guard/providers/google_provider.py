"""
Google Gemini provider.

Text generation, plain and streamed, through the google-generativeai SDK.
Gemini errors carry no usable status code; the resilience layer classifies
them by message.
"""

from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

import google.generativeai as genai

from ..core.token_counter import TokenUsage
from .base import Message, ResponseMetadata, TextResponse, TextStreamChunk

# Gemini calls the assistant "model"
ROLES = {"user": "user", "assistant": "model"}


def to_gemini_contents(messages: List[Message]) -> Tuple[Optional[str], List[dict]]:
    """Split chat messages into a system instruction and Gemini contents."""
    system = [m["content"] for m in messages if m.get("role") == "system"]
    contents = [
        {"role": ROLES.get(m.get("role"), "user"), "parts": [m["content"]]}
        for m in messages
        if m.get("role") != "system"
    ]
    return ("\n\n".join(system) if system else None), contents


def response_text(response: Any) -> str:
    """Text of the first candidate; empty when the response has none."""
    if not response.candidates:
        return ""
    content = response.candidates[0].content
    parts = content.parts if content else []
    return "".join(part.text for part in parts if getattr(part, "text", None))


def _usage(response: Any) -> Optional[TokenUsage]:
    metadata = getattr(response, "usage_metadata", None)
    if not metadata or not metadata.prompt_token_count:
        return None
    return TokenUsage(
        prompt_tokens=metadata.prompt_token_count,
        completion_tokens=metadata.candidates_token_count or 0,
    )


def _finish_reason(response: Any) -> Optional[str]:
    if not response.candidates:
        return None
    reason = response.candidates[0].finish_reason
    return getattr(reason, "name", None) or (str(reason) if reason else None)


def _raise_if_blocked(response: Any) -> None:
    block_reason = getattr(getattr(response, "prompt_feedback", None), "block_reason", None)
    if block_reason and not response.candidates:
        raise ValueError(
            f"Prompt blocked by Google safety filters: {getattr(block_reason, 'name', block_reason)}"
        )


class GoogleProvider:
    """Gemini implementation of the text generation capability.

    Args:
        api_key: Configures the SDK when given; otherwise GOOGLE_API_KEY is
            read from the environment by the SDK
        model_factory: Builds a model object from ``model_name`` and
            ``system_instruction``
    """

    name = "google"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_factory: Optional[Callable[..., Any]] = None,
    ):
        if api_key:
            genai.configure(api_key=api_key)
        self.model_factory = model_factory or genai.GenerativeModel

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse:
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        system, contents = to_gemini_contents(messages)
        response = await self.model_factory(
            model_name=model, system_instruction=system
        ).generate_content_async(
            contents, generation_config=self._generation_config(max_tokens, temperature)
        )
        _raise_if_blocked(response)

        return TextResponse(
            content=response_text(response),
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=_usage(response),
                finish_reason=_finish_reason(response),
            ),
        )

    async def stream_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextStreamChunk]:
        """Stream a completion; usage is taken from the last chunk."""
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        system, contents = to_gemini_contents(messages)
        stream = await self.model_factory(
            model_name=model, system_instruction=system
        ).generate_content_async(
            contents,
            generation_config=self._generation_config(max_tokens, temperature),
            stream=True,
        )

        last = None
        async for chunk in stream:
            _raise_if_blocked(chunk)
            last = chunk
            text = response_text(chunk)
            if text:
                yield TextStreamChunk(content=text)

        yield TextStreamChunk(
            content="",
            is_complete=True,
            metadata=ResponseMetadata(
                provider=self.name,
                model=model,
                usage=_usage(last) if last is not None else None,
                finish_reason=_finish_reason(last) if last is not None else None,
            ),
        )

    @staticmethod
    def _generation_config(max_tokens: Optional[int], temperature: Optional[float]) -> dict:
        config = {}
        if max_tokens is not None:
            config["max_output_tokens"] = max_tokens
        if temperature is not None:
            config["temperature"] = temperature
        return config
