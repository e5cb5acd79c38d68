"""Unit tests for provider error classification."""

import asyncio

import pytest

from core.errors import (
    ConfigurationError,
    GuardrailRule,
    ProviderError,
    ProviderErrorKind,
    ValidationError,
    classify_provider_error,
    is_retryable,
)


class RateLimitError(Exception):
    """Stand-in named like the openai SDK class."""


class APITimeoutError(Exception):
    pass


class APIConnectionError(Exception):
    pass


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class CodedError(Exception):
    def __init__(self, code):
        super().__init__("socket error")
        self.code = code


class TestClassifyProviderError:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (RateLimitError("slow down"), ProviderErrorKind.RATE_LIMITED),
            (APITimeoutError("late"), ProviderErrorKind.TIMEOUT),
            (APIConnectionError("reset"), ProviderErrorKind.TRANSIENT_NETWORK),
            (asyncio.TimeoutError(), ProviderErrorKind.TIMEOUT),
            (ConnectionResetError(), ProviderErrorKind.TRANSIENT_NETWORK),
            (StatusError(429), ProviderErrorKind.RATE_LIMITED),
            (StatusError(503), ProviderErrorKind.TRANSIENT_NETWORK),
            (StatusError(400), ProviderErrorKind.PERMANENT),
            (CodedError("ECONNRESET"), ProviderErrorKind.TRANSIENT_NETWORK),
            (RuntimeError("request timed out"), ProviderErrorKind.TIMEOUT),
            (RuntimeError("Rate limit reached"), ProviderErrorKind.RATE_LIMITED),
            (RuntimeError("invalid input"), ProviderErrorKind.PERMANENT),
        ],
    )
    def test_classification(self, exc, kind):
        assert classify_provider_error(exc) is kind

    def test_explicit_provider_error_kind_is_kept(self):
        exc = ProviderError(ProviderErrorKind.TIMEOUT, "store timeout")
        assert classify_provider_error(exc) is ProviderErrorKind.TIMEOUT

    def test_core_errors_are_permanent(self):
        assert classify_provider_error(ConfigurationError("x")) is ProviderErrorKind.PERMANENT
        exc = ValidationError(GuardrailRule.MISSING_SITE, "site_id is required")
        assert classify_provider_error(exc) is ProviderErrorKind.PERMANENT


class TestIsRetryable:
    def test_transient_errors_are_retryable(self):
        assert is_retryable(StatusError(429))
        assert is_retryable(APITimeoutError("late"))

    def test_permanent_errors_are_not(self):
        assert not is_retryable(StatusError(401))

    def test_cancellation_is_never_retried(self):
        assert not is_retryable(asyncio.CancelledError())
