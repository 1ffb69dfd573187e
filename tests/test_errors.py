"""
Unit tests for error classification and sanitisation.
"""

import json
from types import SimpleNamespace

import pytest

from claim_guard.core.errors import (
    CAPACITY_MESSAGE,
    ClassifiedError,
    ConfigError,
    ErrorClass,
    RateLimitError,
    TruncatedResponseError,
    classify_error,
    is_retryable_error,
    sanitize_error_message,
)


class StatusError(Exception):
    """Exception carrying an HTTP status like SDK errors do."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TestClassifyRateLimits:
    """Test rate-limit and overload detection."""

    @pytest.mark.parametrize("error", [
        RateLimitError("slow down"),
        StatusError("Too Many Requests", status_code=429),
        Exception("429 Resource has been exhausted"),
        Exception("You exceeded your current quota"),
        Exception("rate_limit_exceeded"),
        {"code": 429},
        {"error": {"code": 429, "message": "limit"}},
        {"error": {"status": "RESOURCE_EXHAUSTED"}},
    ])
    def test_rate_limited(self, error):
        """Rate limit shapes classify as rate limited."""
        assert classify_error(error) is ErrorClass.RATE_LIMITED

    @pytest.mark.parametrize("error", [
        StatusError("Service Unavailable", status_code=503),
        Exception("The model is overloaded. Please try again later."),
        {"status": 503},
        {"error": {"status": "UNAVAILABLE"}},
        SimpleNamespace(response=SimpleNamespace(status_code=503)),
    ])
    def test_overload(self, error):
        """Upstream overload is treated like rate limiting."""
        assert classify_error(error) is ErrorClass.RATE_LIMITED

    def test_body_mapping(self):
        """Status nested in an SDK error body is found."""
        error = StatusError("error", body={"error": {"code": 429}})
        assert classify_error(error) is ErrorClass.RATE_LIMITED


class TestClassifyTruncation:
    """Test truncated output detection."""

    def test_truncated_exception(self):
        """TruncatedResponseError is truncation."""
        error = TruncatedResponseError("cut", finish_reason="MAX_TOKENS")
        assert classify_error(error) is ErrorClass.TRUNCATED

    def test_json_decode_error(self):
        """Malformed JSON is truncation."""
        with pytest.raises(json.JSONDecodeError) as exc_info:
            json.loads('{"damagedParts": [')
        assert classify_error(exc_info.value) is ErrorClass.TRUNCATED

    def test_finish_reason_length(self):
        """A length finish reason is truncation."""
        assert classify_error({"finish_reason": "length"}) is ErrorClass.TRUNCATED

    def test_message_marker(self):
        """Truncation messages are recognised."""
        assert classify_error(ValueError("response was truncated")) is ErrorClass.TRUNCATED


class TestClassifyFatal:
    """Test that everything else fails closed."""

    @pytest.mark.parametrize("error", [
        ValueError("bad request"),
        ConfigError("GEMINI_API_KEY is not configured"),
        StatusError("Unauthorized", status_code=401),
        None,
        42,
        {"unexpected": "shape"},
    ])
    def test_fatal(self, error):
        """Unrecognised or fatal shapes are not retried."""
        assert classify_error(error) is ErrorClass.FATAL
        assert not is_retryable_error(error)

    def test_broken_str_does_not_raise(self):
        """Errors whose str() raises are classified, not propagated."""
        class Broken(Exception):
            def __str__(self):
                raise RuntimeError("boom")

        assert classify_error(Broken()) is ErrorClass.FATAL

    def test_retryable_classes(self):
        """Only rate limiting and truncation are retryable."""
        assert ErrorClass.RATE_LIMITED.retryable
        assert ErrorClass.TRUNCATED.retryable
        assert not ErrorClass.FATAL.retryable


class TestSanitize:
    """Test user-facing error messages."""

    @pytest.mark.parametrize("error,expected", [
        (Exception("429 quota exceeded"), CAPACITY_MESSAGE),
        (Exception("API_KEY_INVALID: key AIza-secret rejected"),
         "AI service configuration error. Please contact support."),
        (Exception("FILE_TOO_LARGE"), "File size exceeds maximum allowed (20MB)."),
        (Exception("401 unauthorized"),
         "Authentication failed. Please check your API configuration."),
        (Exception("fetch failed: network down"),
         "Network error. Please check your connection and try again."),
        (Exception("Response blocked due to SAFETY"),
         "Content was blocked by safety filters. Please try different input."),
        (Exception("Gemini returned an internal error"), "AI service error. Please try again."),
        (Exception("something odd"), "An unexpected error occurred. Please try again."),
        ("not an exception", "An unexpected error occurred. Please try again."),
    ])
    def test_messages(self, error, expected):
        """Known failure kinds map to fixed messages."""
        assert sanitize_error_message(error) == expected

    def test_never_echoes_internal_detail(self):
        """Secrets in the raw error never reach the message."""
        message = sanitize_error_message(Exception("invalid api key sk-12345"))
        assert "sk-12345" not in message

    def test_classified_error_from_exception(self):
        """Classification keeps raw detail separate from the safe message."""
        error = StatusError("Too Many Requests for key sk-1", status_code=429)
        classified = ClassifiedError.from_exception(error)

        assert classified.error_class is ErrorClass.RATE_LIMITED
        assert classified.retryable
        assert classified.message == CAPACITY_MESSAGE
        assert "sk-1" in classified.detail
        assert classified.error is error
