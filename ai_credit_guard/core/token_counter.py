"""
Token counting and usage tracking.

Holds provider-reported token counts and the character-based estimate used
before a request is sent.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Mapping

# Rough characters-per-token ratio for English text across current tokenizers
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a provider for one request."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text as ceil(len / 4)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Mapping[str, str]]) -> int:
    """Estimate the prompt tokens of a chat message list."""
    return sum(estimate_tokens(message.get("content") or "") for message in messages)
