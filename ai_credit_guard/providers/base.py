"""
Provider capability contracts and response types.

Providers are plain values that satisfy one or more capability protocols;
there is no provider base class.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from ..core.token_counter import TokenUsage

Message = Dict[str, str]


@dataclass(frozen=True)
class ResponseMetadata:
    """What a provider reported about a completed request."""
    provider: str
    model: str
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class TextResponse:
    content: str
    metadata: ResponseMetadata


@dataclass(frozen=True)
class TextStreamChunk:
    """One piece of a streamed completion.

    The final chunk has ``is_complete`` set and may carry usage metadata.
    """
    content: str
    is_complete: bool = False
    metadata: Optional[ResponseMetadata] = None


@dataclass(frozen=True)
class ImageResponse:
    images: List[str]  # URLs or base64 payloads
    size: str
    metadata: ResponseMetadata


@dataclass(frozen=True)
class SpeechResponse:
    audio: bytes
    characters: int
    metadata: ResponseMetadata
    format: str = "mp3"


@runtime_checkable
class TextGenerationProvider(Protocol):
    name: str

    async def generate_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> TextResponse: ...

    def stream_text(
        self,
        messages: List[Message],
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextStreamChunk]: ...


@runtime_checkable
class ImageGenerationProvider(Protocol):
    name: str

    async def generate_image(
        self,
        prompt: str,
        model: str,
        size: str = "1024x1024",
        count: int = 1,
    ) -> ImageResponse: ...


@runtime_checkable
class SpeechSynthesisProvider(Protocol):
    name: str

    async def synthesize_speech(
        self,
        text: str,
        model: str,
        voice: str = "alloy",
    ) -> SpeechResponse: ...

