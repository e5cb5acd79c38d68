"""Error taxonomy for the retrieval core.

The core raises ``ValidationError`` and ``ConfigurationError`` itself.
Embedding and vector store failures are never wrapped: they reach the
caller as raised by the collaborator. ``classify_provider_error`` lets the
calling runtime decide whether such an exception is worth retrying.
"""

from __future__ import annotations

import asyncio
from enum import Enum


class RAGError(Exception):
    """Base class for errors raised by the retrieval core."""


class GuardrailRule(str, Enum):
    MISSING_TENANT = "missing_tenant"
    MISSING_SITE = "missing_site"
    DISALLOWED_SOURCE_TYPE = "disallowed_source_type"
    EMPTY_QUERY = "empty_query"


class ValidationError(RAGError):
    """A retrieval request violated a guardrail. Raised before any I/O."""

    def __init__(self, rule: GuardrailRule, message: str, values: list[str] | None = None):
        super().__init__(message)
        self.rule = rule
        self.values = values or []


class ConfigurationError(RAGError):
    """The core was invoked with missing or inconsistent configuration."""


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT = "permanent"


class ProviderError(RAGError):
    """Provider failure with an explicit kind, for collaborators that raise one."""

    def __init__(self, kind: ProviderErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


_TIMEOUT_PATTERNS = ("timeout", "timed out")
_RATE_LIMIT_PATTERNS = ("rate limit", "rate_limit", "too many requests", "429")
_NETWORK_ERROR_CODES = {"ECONNRESET", "ETIMEDOUT", "ECONNREFUSED"}


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: BaseException) -> ProviderErrorKind:
    """Map an exception raised by a provider to a ``ProviderErrorKind``."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, RAGError):
        return ProviderErrorKind.PERMANENT

    # openai SDK errors are matched by name so the SDK stays an optional import
    name = type(exc).__name__
    if name == "RateLimitError":
        return ProviderErrorKind.RATE_LIMITED
    if name == "APITimeoutError" or isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ProviderErrorKind.TIMEOUT
    if name == "APIConnectionError" or isinstance(exc, ConnectionError):
        return ProviderErrorKind.TRANSIENT_NETWORK

    status = _status_code(exc)
    if status == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status is not None and 500 <= status < 600:
        return ProviderErrorKind.TRANSIENT_NETWORK
    if status is not None:
        return ProviderErrorKind.PERMANENT

    if getattr(exc, "code", None) in _NETWORK_ERROR_CODES:
        return ProviderErrorKind.TRANSIENT_NETWORK

    message = str(exc).lower()
    if any(p in message for p in _RATE_LIMIT_PATTERNS):
        return ProviderErrorKind.RATE_LIMITED
    if any(p in message for p in _TIMEOUT_PATTERNS):
        return ProviderErrorKind.TIMEOUT
    return ProviderErrorKind.PERMANENT


def is_retryable(exc: BaseException) -> bool:
    """True for rate limits, timeouts and transient network failures."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    return classify_provider_error(exc) is not ProviderErrorKind.PERMANENT
