"""
Provider-agnostic error taxonomy for AI service calls.

Every failure that leaves the resilience layer is an ``AIServiceError`` whose
``retryable`` flag drives the retry executor.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Closed set of failure categories."""
    SERVICE_ERROR = "AI_SERVICE_ERROR"
    RATE_LIMIT = "AI_RATE_LIMIT"
    TIMEOUT = "AI_TIMEOUT"
    PROVIDER_UNAVAILABLE = "AI_PROVIDER_UNAVAILABLE"
    AUTHENTICATION = "AI_AUTHENTICATION"
    INVALID_REQUEST = "AI_INVALID_REQUEST"
    CONTENT_FILTERED = "AI_CONTENT_FILTERED"
    CIRCUIT_OPEN = "AI_CIRCUIT_OPEN"


class AIServiceError(Exception):
    """Base error for AI service operations.

    Attributes:
        provider: Provider key the call was made against
        status_code: HTTP-like status code
        retryable: Whether the operation may succeed if attempted again
        context: Extra diagnostic data (never secrets)
    """

    kind = ErrorKind.SERVICE_ERROR

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int = 500,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable
        self.context = dict(context or {})

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "provider": self.provider,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "context": self.context,
        }


class AIRateLimitError(AIServiceError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        provider: str,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Rate limit exceeded for {provider}. Please try again later.",
            provider, 429, True, context,
        )
        self.retry_after = retry_after  # milliseconds


class AITimeoutError(AIServiceError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Request to {provider} timed out. Please try again.",
            provider, 408, True, context,
        )


class AIProviderUnavailableError(AIServiceError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE

    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"{provider} service is temporarily unavailable. Please try again later.",
            provider, 503, True, context,
        )


class AIAuthenticationError(AIServiceError):
    kind = ErrorKind.AUTHENTICATION

    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Authentication failed for {provider}. Please check your API key.",
            provider, 401, False, context,
        )


class AIInvalidRequestError(AIServiceError):
    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, provider: str, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, provider, 400, False, context)


class AIContentFilterError(AIServiceError):
    kind = ErrorKind.CONTENT_FILTERED

    def __init__(self, provider: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Content was filtered by {provider} safety systems.",
            provider, 400, False, context,
        )


class CircuitBreakerOpenError(AIServiceError):
    """Raised without calling the provider while its circuit is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(
        self,
        provider: str,
        next_attempt_time: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Circuit breaker is open for {provider}. "
            "Service temporarily disabled due to repeated failures.",
            provider, 503, False, context,
        )
        self.next_attempt_time = next_attempt_time
