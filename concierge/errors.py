"""Error taxonomy shared by every stage of the query engine"""

from typing import Any, Dict, List, Optional


class ConciergeError(Exception):
    """Base error carrying a machine-readable code and an HTTP-equivalent status"""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ConciergeError):
    """Malformed input; always surfaced to the caller"""

    code = "validation_error"
    status_code = 400

    def __init__(self, errors: List[str], message: str = ""):
        self.errors = list(errors)
        super().__init__(message or "; ".join(self.errors) or "Validation failed",
                         details={"errors": self.errors})


class InvalidInput(ValidationError):
    code = "invalid_input"


class InvalidDimension(ValidationError):
    code = "invalid_dimension"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__([f"Expected vector of dimension {expected}, got {actual}"])


class RateLimitError(ConciergeError):
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int, message: str = "Rate limit exceeded"):
        self.retry_after = retry_after
        super().__init__(message, details={"retry_after": retry_after})


class UpstreamProviderError(ConciergeError):
    """Embedding or generation provider failure"""

    code = "upstream_provider_error"
    status_code = 502
    retryable = False

    def __init__(self, message: str, provider: str = "openai", retryable: Optional[bool] = None):
        self.provider = provider
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message, details={"provider": provider, "retryable": self.retryable})


class ProviderRateLimitError(UpstreamProviderError):
    code = "provider_rate_limited"
    retryable = True


class QuotaExceededError(UpstreamProviderError):
    code = "provider_quota_exceeded"
    retryable = False


class InvalidAPIKeyError(UpstreamProviderError):
    code = "provider_invalid_api_key"
    retryable = False


class ProviderTimeoutError(UpstreamProviderError):
    code = "provider_timeout"
    retryable = True


class RuleConflictError(ConciergeError):
    code = "rule_conflict"
    status_code = 409

    def __init__(self, message: str, conflicts: Optional[List[Any]] = None):
        self.conflicts = list(conflicts or [])
        super().__init__(message, details={
            "conflicts": [c.model_dump() if hasattr(c, "model_dump") else c for c in self.conflicts]
        })


class NotFoundError(ConciergeError):
    code = "not_found"
    status_code = 404


class PipelineTimeoutError(ConciergeError):
    code = "timeout"
    status_code = 504


class InternalError(ConciergeError):
    code = "internal_error"
    status_code = 500

    def to_dict(self) -> Dict[str, Any]:
        # Internal details stay in the logs
        return {"error": self.code, "message": "An unexpected error occurred"}
