"""
Credit cost calculations and rate management.

Converts provider usage (tokens, images, characters, audio seconds) into whole
credits. Every result is rounded UP so usage is never under-charged.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_UP
from typing import Dict, Iterable, Mapping, Optional

from .token_counter import TokenUsage, estimate_message_tokens, estimate_tokens

DEFAULT_TEXT_RATES = {
    "gpt-4": 30,
    "gpt-4-turbo": 20,
    "gpt-4o": 15,
    "gpt-3.5-turbo": 2,
    "claude-3-opus": 30,
    "claude-3-sonnet": 15,
    "claude-3-haiku": 5,
    "claude-3-5-sonnet": 15,
    "gemini-pro": 10,
    "gemini-1.5-pro": 15,
    "gemini-1.5-flash": 5,
    "mistral-large": 20,
    "mistral-medium": 10,
    "mistral-small": 5,
    "default": 10,
}

DEFAULT_IMAGE_CREDITS = {
    "256x256": 10,
    "512x512": 20,
    "1024x1024": 40,
    "1792x1024": 60,
    "1024x1792": 60,
}

# Completion budget assumed when a request does not set max_tokens
DEFAULT_COMPLETION_TOKENS = 1024


@dataclass(frozen=True)
class CreditRates:
    """Credit rates for every billable operation."""
    text_credits_per_1k_tokens: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_TEXT_RATES)
    )
    image_credits: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_IMAGE_CREDITS)
    )
    speech_credits_per_1k_chars: int = 5
    transcription_credits_per_minute: int = 3

    def __post_init__(self):
        if "default" not in self.text_credits_per_1k_tokens:
            raise ValueError("text credit rates must include a 'default' rate")
        for name, rate in self.text_credits_per_1k_tokens.items():
            if rate < 0:
                raise ValueError(f"text credit rate for {name} cannot be negative")
        for size, credits in self.image_credits.items():
            if credits < 0:
                raise ValueError(f"image credits for {size} cannot be negative")
        if self.speech_credits_per_1k_chars < 0:
            raise ValueError("speech_credits_per_1k_chars cannot be negative")
        if self.transcription_credits_per_minute < 0:
            raise ValueError("transcription_credits_per_minute cannot be negative")


def _check_quantity(value: float, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number")
    if value < 0:
        raise ValueError(f"{name} cannot be negative")


def _round_up(credits: Decimal) -> int:
    return int(credits.quantize(Decimal("1"), rounding=ROUND_UP))


class CreditCalculator:
    """Calculates the credit cost of AI operations from a rate table."""

    def __init__(self, rates: Optional[CreditRates] = None):
        self.rates = rates or CreditRates()

    def get_model_rate(self, model: str) -> int:
        """Credits per 1K tokens for a model, falling back to the default rate."""
        rates = self.rates.text_credits_per_1k_tokens
        return rates.get(model, rates["default"])

    def calculate_text_credits(self, tokens: int, model: str) -> int:
        """Calculate credits for text generation.

        Args:
            tokens: Total tokens used (prompt + completion)
            model: Model identifier

        Returns:
            Credits rounded UP; 0 tokens cost 0 credits

        Raises:
            ValueError: If tokens is negative or not finite
        """
        _check_quantity(tokens, "Token count")
        if tokens == 0:
            return 0
        credits = Decimal(str(tokens)) / Decimal("1000") * Decimal(self.get_model_rate(model))
        return _round_up(credits)

    def calculate_usage_credits(self, usage: TokenUsage, model: str) -> int:
        return self.calculate_text_credits(usage.total_tokens, model)

    def calculate_image_credits(self, size: str, count: int = 1) -> int:
        """Calculate credits for ``count`` images of ``size``.

        Raises:
            ValueError: If count is negative or not an integer, or the size is unknown
        """
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValueError("Image count must be an integer")
        if count < 0:
            raise ValueError("Image count cannot be negative")
        if size not in self.rates.image_credits:
            raise ValueError(f"Unknown image size: {size}")
        return self.rates.image_credits[size] * count

    def calculate_speech_credits(self, text: str) -> int:
        if not isinstance(text, str):
            raise ValueError("Text must be a string")
        if not text:
            return 0
        credits = (
            Decimal(len(text)) / Decimal("1000")
            * Decimal(self.rates.speech_credits_per_1k_chars)
        )
        return _round_up(credits)

    def calculate_transcription_credits(self, duration_seconds: float) -> int:
        _check_quantity(duration_seconds, "Duration")
        if duration_seconds == 0:
            return 0
        minutes = Decimal(str(duration_seconds)) / Decimal("60")
        return _round_up(minutes * Decimal(self.rates.transcription_credits_per_minute))

    def estimate_text_credits(
        self,
        messages: Iterable[Mapping[str, str]],
        model: str,
        max_tokens: Optional[int] = None,
    ) -> int:
        """Estimate the reservation for a chat request before it is sent.

        Prompt tokens are estimated from message text; the completion is
        assumed to use its whole ``max_tokens`` budget.
        """
        completion = DEFAULT_COMPLETION_TOKENS if max_tokens is None else max_tokens
        return self.calculate_text_credits(
            estimate_message_tokens(messages) + completion, model
        )

    def estimate_prompt_credits(self, text: str, model: str) -> int:
        return self.calculate_text_credits(estimate_tokens(text), model)
