"""Typed errors raised by the AI analysis capability.

Only ``FatalConfigurationError`` subclasses abort a whole run; every other
``AIServiceError`` is recoverable at pass or item level.
"""

from __future__ import annotations


class AIServiceError(Exception):
    error_type = "unknown"
    user_message = "AI analysis failed."
    retryable = False


class FatalConfigurationError(AIServiceError):
    """Credentials are missing or rejected; no further pass can succeed."""


class MissingKeyError(FatalConfigurationError):
    error_type = "missing_key"

    def __init__(self, provider: str):
        super().__init__(f"Missing {provider} API key - analysis cannot run without AI services")
        self.provider = provider
        self.user_message = f"{provider} API key required. Configure it before running an analysis."


class InvalidKeyError(FatalConfigurationError):
    error_type = "invalid_key"

    def __init__(self, provider: str, details: str):
        super().__init__(f"Invalid {provider} API key: {details}")
        self.provider = provider
        self.user_message = f"{provider} API key is invalid. Please check the configured key."


class ServiceUnavailableError(AIServiceError):
    error_type = "service_unavailable"
    user_message = "AI service is temporarily unavailable. Please try again in a moment."
    retryable = True

    def __init__(self, provider: str, status_code: int | None = None):
        super().__init__(f"{provider} service unavailable ({status_code or 'unknown'})")
        self.status_code = status_code


class NetworkError(AIServiceError):
    error_type = "network_error"
    user_message = "Network connection failed. Please check your connection and try again."
    retryable = True

    def __init__(self, details: str):
        super().__init__(f"Network error: {details}")


class RateLimitError(AIServiceError):
    error_type = "rate_limit"
    user_message = "Rate limit exceeded. Please wait a moment before trying again."
    retryable = True

    def __init__(self, provider: str, retry_after: float | None = None):
        suffix = f" (retry after {retry_after}s)" if retry_after else ""
        super().__init__(f"Rate limit exceeded for {provider}{suffix}")
        self.retry_after = retry_after
