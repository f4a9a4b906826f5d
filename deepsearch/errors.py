"""Error taxonomy shared by the pipeline, the API layer and the CLI."""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    CREDITS_INSUFFICIENT = "credits_insufficient"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"
    SEARCH_FAILED = "search_failed"
    SYNTHESIS_FAILED = "synthesis_failed"
    TIMEOUT = "timeout"
    INVALID_QUERY = "invalid_query"
    UNKNOWN = "unknown"


ERROR_MESSAGES: dict[ErrorType, str] = {
    ErrorType.CREDITS_INSUFFICIENT: "You don't have enough credits for this search. Purchase more to continue.",
    ErrorType.RATE_LIMITED: "You've made too many requests. Please wait a moment before trying again.",
    ErrorType.PROVIDER_UNAVAILABLE: "Our AI service is temporarily unavailable. Please try again in a few moments.",
    ErrorType.PROVIDER_NOT_CONFIGURED: "The selected AI provider is not available on this server.",
    ErrorType.SEARCH_FAILED: "We couldn't complete your search. Please try again.",
    ErrorType.SYNTHESIS_FAILED: "We found results but couldn't generate a summary. Please try again.",
    ErrorType.TIMEOUT: "The request took too long. Please try a simpler query or try again.",
    ErrorType.INVALID_QUERY: "Please enter a valid search query.",
    ErrorType.UNKNOWN: "An unexpected error occurred. Please try again.",
}


class DeepSearchError(Exception):
    error_type: ErrorType = ErrorType.UNKNOWN
    status_code: int = 500

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "message": str(self) or ERROR_MESSAGES[self.error_type],
        }


class RequestValidationError(DeepSearchError):
    """Missing or malformed request fields. Never retried."""

    error_type = ErrorType.INVALID_QUERY
    status_code = 400


class ProviderNotConfiguredError(DeepSearchError):
    """Unknown provider id or missing credentials. A client mistake, never retried."""

    error_type = ErrorType.PROVIDER_NOT_CONFIGURED
    status_code = 400

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Provider '{provider}' is not configured: {reason}")
        self.provider = provider


class UpstreamProviderError(DeepSearchError):
    """A transient LLM or search failure. May trigger one provider fallback."""

    error_type = ErrorType.PROVIDER_UNAVAILABLE
    status_code = 502

    def __init__(self, provider: str, message: str, *, status: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class SearchProviderError(UpstreamProviderError):
    error_type = ErrorType.SEARCH_FAILED


class ParseError(DeepSearchError):
    """LLM output was not the expected structured data. Always recovered locally."""


class CreditInsufficientError(DeepSearchError):
    error_type = ErrorType.CREDITS_INSUFFICIENT
    status_code = 402

    def __init__(self, needed: int | None = None, available: int | None = None):
        super().__init__(ERROR_MESSAGES[ErrorType.CREDITS_INSUFFICIENT])
        self.needed = needed
        self.available = available

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"needed": self.needed, "available": self.available})
        return data


class RateLimitExceededError(DeepSearchError):
    error_type = ErrorType.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str | None = None, retry_after: int | None = None):
        super().__init__(message or ERROR_MESSAGES[ErrorType.RATE_LIMITED])
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class CacheBackendUnavailable(DeepSearchError):
    """The persistent cache tier could not be reached. Always recovered locally."""


class LedgerFunctionNotFound(DeepSearchError):
    """The ledger backend does not expose the requested operation (legacy schema)."""

    def __init__(self, function: str):
        super().__init__(f"Ledger function not found: {function}")
        self.function = function


def classify_error(exc: BaseException) -> ErrorType:
    if isinstance(exc, DeepSearchError):
        return exc.error_type
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    return ErrorType.UNKNOWN


def error_payload(exc: BaseException) -> dict[str, Any]:
    """User-facing error body for stream events and HTTP responses."""
    if isinstance(exc, DeepSearchError):
        return exc.to_dict()
    error_type = classify_error(exc)
    return {"error_type": error_type.value, "message": ERROR_MESSAGES[error_type]}
