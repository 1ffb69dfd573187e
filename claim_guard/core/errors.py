"""
Error taxonomy and classification.

Failures from the model invocation boundary are classified exactly once
into a closed set of error classes that the rest of the package consumes.

Classification Order:
1. Rate limit / quota exhaustion (HTTP 429)
2. Upstream overload (HTTP 503, UNAVAILABLE, RESOURCE_EXHAUSTED)
3. Truncated or unparseable structured output
4. Everything else is fatal
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class ClaimGuardError(Exception):
    """Base class for errors raised by this package."""


class RetryableError(ClaimGuardError):
    """Base class for errors where another model may succeed."""


class FatalError(ClaimGuardError):
    """Base class for unrecoverable errors."""


class RateLimitError(RetryableError):
    """Raised when a model signals rate limiting or overload."""


class TruncatedResponseError(RetryableError):
    """Raised when a model response is cut off or not well-formed JSON."""

    def __init__(self, message: str, finish_reason: Optional[str] = None):
        super().__init__(message)
        self.finish_reason = finish_reason


class ConfigError(FatalError):
    """Raised when the model client is misconfigured."""


class ErrorClass(Enum):
    """Closed set of error classes produced at the invocation boundary."""
    RATE_LIMITED = "rate_limited"
    TRUNCATED = "truncated"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not ErrorClass.FATAL


@dataclass(frozen=True)
class ClassifiedError:
    """An error after classification.

    ``message`` is safe to show to end users; ``detail`` keeps the raw
    text for logs and is never surfaced by the package itself.
    """
    error_class: ErrorClass
    message: str
    detail: str = ""
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @property
    def retryable(self) -> bool:
        return self.error_class.retryable

    @classmethod
    def from_exception(cls, error: BaseException) -> "ClassifiedError":
        return cls(
            error_class=classify_error(error),
            message=sanitize_error_message(error),
            detail=_safe_str(error),
            error=error,
        )


RATE_LIMIT_STATUS_CODES = {429}
OVERLOAD_STATUS_CODES = {503}
OVERLOAD_STATUS_STRINGS = {"UNAVAILABLE", "RESOURCE_EXHAUSTED"}
TRUNCATION_FINISH_REASONS = {"MAX_TOKENS", "LENGTH"}

RATE_LIMIT_MARKERS = ("rate_limit", "rate limit", "quota", "429", "resource_exhausted")
OVERLOAD_MARKERS = ("503", "overloaded", "unavailable")
TRUNCATION_MARKERS = ("truncated", "incomplete or malformed", "failed to parse")

CAPACITY_MESSAGE = "AI models are currently at capacity. Please wait and try again."


def classify_error(error: Any) -> ErrorClass:
    """Classify an invocation failure.

    Never raises; shapes it cannot interpret are classified as fatal so
    unknown bugs are not hidden behind retries.

    Args:
        error: Exception, mapping or any object describing the failure

    Returns:
        ErrorClass for the failure
    """
    try:
        return _classify(error)
    except Exception:
        logger.debug("Could not classify error of type %s", type(error).__name__, exc_info=True)
        return ErrorClass.FATAL


def is_retryable_error(error: Any) -> bool:
    """True iff the failure should fall back to another model."""
    return classify_error(error).retryable


def _classify(error: Any) -> ErrorClass:
    if error is None:
        return ErrorClass.FATAL

    if isinstance(error, RateLimitError):
        return ErrorClass.RATE_LIMITED
    if isinstance(error, TruncatedResponseError):
        return ErrorClass.TRUNCATED
    if isinstance(error, FatalError):
        return ErrorClass.FATAL

    codes = set(_status_codes(error))
    statuses = {status.upper() for status in _status_strings(error)}
    text = _safe_str(error).lower()

    if codes & RATE_LIMIT_STATUS_CODES or "RESOURCE_EXHAUSTED" in statuses:
        return ErrorClass.RATE_LIMITED
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ErrorClass.RATE_LIMITED

    if codes & OVERLOAD_STATUS_CODES or statuses & OVERLOAD_STATUS_STRINGS:
        return ErrorClass.RATE_LIMITED
    if any(marker in text for marker in OVERLOAD_MARKERS):
        return ErrorClass.RATE_LIMITED

    if isinstance(error, json.JSONDecodeError):
        return ErrorClass.TRUNCATED
    finish_reason = _lookup(error, "finish_reason")
    if isinstance(finish_reason, str) and finish_reason.upper() in TRUNCATION_FINISH_REASONS:
        return ErrorClass.TRUNCATED
    if any(marker in text for marker in TRUNCATION_MARKERS):
        return ErrorClass.TRUNCATED

    return ErrorClass.FATAL


def _lookup(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _candidates(error: Any) -> Iterable[Any]:
    """The error itself plus the nested objects SDKs hang status on."""
    yield error
    nested = _lookup(error, "error")
    if nested is not None and nested is not error:
        yield nested
    response = _lookup(error, "response")
    if response is not None:
        yield response
    body = _lookup(error, "body")
    if isinstance(body, Mapping):
        yield body
        if isinstance(body.get("error"), Mapping):
            yield body["error"]


def _status_codes(error: Any) -> Iterable[int]:
    for candidate in _candidates(error):
        for name in ("status_code", "code", "status"):
            value = _lookup(candidate, name)
            if isinstance(value, bool):
                continue
            if isinstance(value, int):
                yield value
            elif isinstance(value, str) and value.strip().isdigit():
                yield int(value.strip())


def _status_strings(error: Any) -> Iterable[str]:
    for candidate in _candidates(error):
        for name in ("status", "code", "reason"):
            value = _lookup(candidate, name)
            if isinstance(value, str) and not value.strip().isdigit():
                yield value.strip()


def _safe_str(error: Any) -> str:
    try:
        if isinstance(error, Mapping):
            return json.dumps(error, default=str)
        return str(error)
    except Exception:
        return type(error).__name__


def sanitize_error_message(error: Any) -> str:
    """Convert a failure into a user-facing message.

    API keys, stack traces and raw provider text are never echoed back.
    """
    if classify_error(error) is ErrorClass.RATE_LIMITED:
        return CAPACITY_MESSAGE

    if isinstance(error, BaseException):
        message = _safe_str(error).lower()

        if "api_key_invalid" in message or "invalid api key" in message or "api key" in message:
            return "AI service configuration error. Please contact support."
        if "file_too_large" in message or "too large" in message:
            return "File size exceeds maximum allowed (20MB)."
        if "401" in message or "unauthorized" in message:
            return "Authentication failed. Please check your API configuration."
        if "network" in message or "fetch failed" in message or "connection" in message:
            return "Network error. Please check your connection and try again."
        if "safety" in message or "blocked" in message:
            return "Content was blocked by safety filters. Please try different input."
        if classify_error(error) is ErrorClass.TRUNCATED:
            return "The AI response was incomplete. Please try again."
        if "gemini" in message or "google" in message:
            return "AI service error. Please try again."

    return "An unexpected error occurred. Please try again."
