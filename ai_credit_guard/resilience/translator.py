"""
Translation of provider SDK errors into the AIServiceError taxonomy.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import anthropic
import openai

from .errors import (
    AIAuthenticationError,
    AIContentFilterError,
    AIInvalidRequestError,
    AIProviderUnavailableError,
    AIRateLimitError,
    AIServiceError,
    AITimeoutError,
)

logger = logging.getLogger(__name__)

GOOGLE_PROVIDERS = {"google", "gemini"}
MISTRAL_PROVIDERS = {"mistral"}

_UNAVAILABLE_STATUSES = {500, 502, 503, 504}


def translate_error(
    error: BaseException,
    provider: str,
    context: Optional[Dict[str, Any]] = None,
) -> AIServiceError:
    """Map any exception raised by a provider call to an AIServiceError.

    Errors that are already AIServiceError instances are returned unchanged.

    Args:
        error: Exception raised by the provider SDK or transport
        provider: Provider key the call was made against
        context: Extra diagnostic data carried on the result

    Returns:
        The translated error; the caller raises it
    """
    if isinstance(error, AIServiceError):
        return error

    logger.error(f"AI service error from {provider}: {type(error).__name__}: {error}")

    if isinstance(error, openai.APIStatusError):
        return _translate_status_error(
            error, provider, context, check_content_filter=True,
            extra={"code": error.code, "type": error.type},
        )
    if isinstance(error, anthropic.APIStatusError):
        body = error.body if isinstance(error.body, dict) else {}
        error_type = (body.get("error") or {}).get("type")
        return _translate_status_error(
            error, provider, context, check_content_filter=False,
            extra={"type": error_type},
        )
    if isinstance(error, (openai.APITimeoutError, anthropic.APITimeoutError)):
        return AITimeoutError(provider, context)
    if isinstance(error, (openai.APIConnectionError, anthropic.APIConnectionError)):
        return AIProviderUnavailableError(
            provider, {**(context or {}), "original_error": str(error)}
        )
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return AITimeoutError(provider, context)

    if provider in GOOGLE_PROVIDERS:
        return translate_google_error(error, provider, context)
    if provider in MISTRAL_PROVIDERS:
        return translate_mistral_error(error, provider, context)

    message = str(error)
    if (
        isinstance(error, ConnectionError)
        or "ECONNREFUSED" in message
        or "ENOTFOUND" in message
        or "network" in message.lower()
    ):
        return AIProviderUnavailableError(
            provider, {**(context or {}), "original_error": message}
        )

    return AIServiceError(
        message or "An unknown error occurred", provider, 500, True, context
    )


def _translate_status_error(
    error: Any,
    provider: str,
    context: Optional[Dict[str, Any]],
    check_content_filter: bool,
    extra: Dict[str, Any],
) -> AIServiceError:
    status = error.status_code
    error_context = {**(context or {}), "status": status, **extra}

    if status == 401:
        return AIAuthenticationError(provider, error_context)
    if status == 429:
        return AIRateLimitError(provider, extract_retry_after(error), error_context)
    if status == 400:
        if check_content_filter and (
            "content_policy" in error.message or "content_filter" in error.message
        ):
            return AIContentFilterError(provider, error_context)
        return AIInvalidRequestError(provider, error.message, error_context)
    if status == 408:
        return AITimeoutError(provider, error_context)
    if status in _UNAVAILABLE_STATUSES:
        return AIProviderUnavailableError(provider, error_context)

    return AIServiceError(
        error.message, provider, status or 500, bool(status and status >= 500),
        error_context,
    )


def extract_retry_after(error: Any) -> Optional[int]:
    """Read the retry-after header of an SDK error, in milliseconds."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return int(value) * 1000
    except ValueError:
        return None


def translate_google_error(
    error: BaseException,
    provider: str,
    context: Optional[Dict[str, Any]] = None,
) -> AIServiceError:
    """Classify Google AI errors, which carry no usable status, by message."""
    original = str(error)
    message = original.lower()
    error_context = {**(context or {}), "original_error": original}

    if "api key" in message or "authentication" in message:
        return AIAuthenticationError(provider, error_context)
    if "quota" in message or "rate limit" in message:
        return AIRateLimitError(provider, None, error_context)
    if "safety" in message or "blocked" in message:
        return AIContentFilterError(provider, error_context)
    if "503" in message or "unavailable" in message or "500" in message:
        return AIProviderUnavailableError(provider, error_context)
    if "invalid" in message or "400" in message:
        return AIInvalidRequestError(provider, original, error_context)
    return AIServiceError(original, provider, 500, True, error_context)


def translate_mistral_error(
    error: BaseException,
    provider: str,
    context: Optional[Dict[str, Any]] = None,
) -> AIServiceError:
    original = str(error)
    message = original.lower()
    error_context = {**(context or {}), "original_error": original}

    if "unauthorized" in message or "401" in message:
        return AIAuthenticationError(provider, error_context)
    if "rate limit" in message or "429" in message:
        return AIRateLimitError(provider, None, error_context)
    if "503" in message or "unavailable" in message or "500" in message:
        return AIProviderUnavailableError(provider, error_context)
    if "invalid" in message or "400" in message:
        return AIInvalidRequestError(provider, original, error_context)
    return AIServiceError(original, provider, 500, True, error_context)
