"""
Mistral provider.

Mistral's chat completions endpoint is OpenAI-compatible, so requests go
through the async OpenAI client pointed at the Mistral API.
"""

import os
from dataclasses import replace
from typing import AsyncIterator, List, Optional

from openai import AsyncOpenAI

from .base import Message, TextResponse, TextStreamChunk
from .openai_provider import OpenAIProvider

MISTRAL_API_BASE = "https://api.mistral.ai/v1"


class MistralProvider:
    """Mistral implementation of the text generation capability.

    Args:
        client: Preconfigured client; one for the Mistral API reading
            MISTRAL_API_KEY from the environment is created when omitted
    """

    name = "mistral"

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(
            base_url=MISTRAL_API_BASE, api_key=os.environ.get("MISTRAL_API_KEY")
        )
        # Mistral reports usage on the last streamed chunk without being asked
        self._chat = OpenAIProvider(self.client, stream_usage=False)

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse:
        response = await self._chat.generate_text(messages, model, max_tokens, temperature)
        return replace(response, metadata=replace(response.metadata, provider=self.name))

    async def stream_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextStreamChunk]:
        async for chunk in self._chat.stream_text(messages, model, max_tokens, temperature):
            if chunk.metadata is not None:
                chunk = replace(chunk, metadata=replace(chunk.metadata, provider=self.name))
            yield chunk
