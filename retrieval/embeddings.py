"""Query embedding providers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from core.config import settings
from core.errors import ConfigurationError, RAGError, is_retryable

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str, model: str) -> list[float]: ...


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings API.

    Provider errors (rate limit, timeout, connection) propagate unchanged.
    """

    def __init__(
        self,
        openai_client: AsyncOpenAI | None = None,
        expected_dimensions: int | None = None,
    ):
        if openai_client is None:
            from openai import AsyncOpenAI

            self.openai_client = AsyncOpenAI(
                api_key=settings.openai_api_key, timeout=settings.openai_timeout
            )
        else:
            self.openai_client = openai_client
        self.expected_dimensions = expected_dimensions

    async def embed(self, text: str, model: str) -> list[float]:
        response = await self.openai_client.embeddings.create(model=model, input=text)
        embedding = list(response.data[0].embedding)

        if self.expected_dimensions and len(embedding) != self.expected_dimensions:
            raise ConfigurationError(
                f"Embedding model {model} returned {len(embedding)} dimensions, "
                f"expected {self.expected_dimensions}"
            )
        return embedding


def _retryable(exc: BaseException) -> bool:
    return not isinstance(exc, RAGError) and is_retryable(exc)


class RetryingEmbedder:
    """Wraps an embedding provider with bounded exponential-backoff retries.

    Only rate limits, timeouts and transient network errors are retried.
    When attempts run out the last provider error is re-raised as-is.
    """

    def __init__(
        self,
        inner: EmbeddingProvider,
        max_retries: int = 3,
        initial_wait: float = 1.0,
        max_wait: float = 30.0,
    ):
        self.inner = inner
        self.max_retries = max_retries
        self.initial_wait = initial_wait
        self.max_wait = max_wait

    async def embed(self, text: str, model: str) -> list[float]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait)
            + wait_random(0, self.initial_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self.inner.embed(text, model)
