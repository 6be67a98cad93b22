"""Map OpenAI SDK exceptions onto the provider error taxonomy"""

import openai

from ..errors import (
    InvalidAPIKeyError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    QuotaExceededError,
    UpstreamProviderError,
)


def map_openai_error(error: Exception, operation: str = "request") -> UpstreamProviderError:
    """Classify an SDK exception so callers can decide whether to retry"""
    if isinstance(error, UpstreamProviderError):
        return error

    if isinstance(error, openai.RateLimitError):
        if getattr(error, "code", None) == "insufficient_quota":
            return QuotaExceededError(f"OpenAI quota exceeded during {operation}")
        return ProviderRateLimitError(f"OpenAI rate limit hit during {operation}")

    if isinstance(error, openai.AuthenticationError):
        return InvalidAPIKeyError(f"OpenAI rejected the API key during {operation}")

    if isinstance(error, openai.APITimeoutError):
        return ProviderTimeoutError(f"OpenAI timed out during {operation}")

    if isinstance(error, openai.APIConnectionError):
        return UpstreamProviderError(f"Could not reach OpenAI during {operation}", retryable=True)

    if isinstance(error, openai.APIStatusError):
        return UpstreamProviderError(
            f"OpenAI returned {error.status_code} during {operation}",
            retryable=error.status_code >= 500,
        )

    return UpstreamProviderError(f"OpenAI {operation} failed: {error}", retryable=False)
