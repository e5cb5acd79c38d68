"""Data models for the store assistant RAG pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class SourceType(str, Enum):
    """Kinds of store content that are ingested and retrievable."""

    PRODUCT = "product"
    PAGE = "page"
    POLICY = "policy"

    @classmethod
    def parse(cls, value: str | SourceType) -> SourceType | None:
        if isinstance(value, SourceType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


ALL_SOURCE_TYPES: frozenset[SourceType] = frozenset(SourceType)

MergeStrategy = Literal["concatenate", "separate"]


class Chunk(BaseModel):
    """One embedded slice of a source document, owned by one tenant and site."""

    id: str
    tenant_id: str
    site_id: str
    entity_type: SourceType
    entity_id: str
    version: int = Field(default=1, ge=1)
    embedding: list[float] = Field(default_factory=list)
    content: str
    chunk_index: int = 0
    content_hash: str = ""
    source_updated_at: datetime | None = None
    title: str | None = None
    url: str | None = None
    metadata: dict = Field(default_factory=dict)

    @property
    def source_key(self) -> tuple[SourceType, str]:
        return (self.entity_type, self.entity_id)


class RetrievedChunk(Chunk):
    """A chunk returned by one retrieval call, with its similarity score."""

    similarity: float = Field(default=0.0, ge=0.0, le=1.0)
    distance: float = 0.0


class ContextBlock(BaseModel):
    """One source document's contribution to the prompt context."""

    source_type: SourceType
    source_id: str
    content: str
    sections: list[str] = Field(default_factory=list)
    chunk_ids: list[str] = Field(default_factory=list)
    chunk_indices: list[int] = Field(default_factory=list)
    similarity: float = 0.0
    title: str | None = None
    url: str | None = None
    source_updated_at: datetime | None = None


class Evidence(BaseModel):
    """Citation record for one source; carries no body text."""

    source_type: SourceType
    source_id: str
    chunk_ids: list[str] = Field(default_factory=list)
    score: float = 0.0
    title: str | None = None
    url: str | None = None
    source_updated_at: datetime | None = None


class RetrievalPolicy(BaseModel):
    """Per-call limits and allowlist for one retrieval invocation."""

    model_config = {"frozen": True}

    allowed_source_types: frozenset[SourceType] = ALL_SOURCE_TYPES
    require_explicit_allowlist: bool = True
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    top_k: int = Field(default=10, gt=0)
    max_context_tokens: int | None = Field(default=4000, gt=0)
    max_context_characters: int | None = Field(default=None, gt=0)
    max_chunks_per_source: int = Field(default=3, gt=0)
    max_sources: int = Field(default=5, gt=0)
    merge_strategy: MergeStrategy = "concatenate"
    embedding_model: str = "text-embedding-3-small"

    @model_validator(mode="before")
    @classmethod
    def _single_budget(cls, data):
        # A character budget replaces the token budget unless both are given.
        if isinstance(data, dict) and data.get("max_context_characters") is not None:
            if data.get("max_context_tokens") is not None:
                raise ValueError(
                    "max_context_tokens and max_context_characters are mutually exclusive"
                )
            data = {**data, "max_context_tokens": None}
        return data

    @model_validator(mode="after")
    def _has_budget(self) -> RetrievalPolicy:
        if self.max_context_tokens is None and self.max_context_characters is None:
            raise ValueError("one of max_context_tokens or max_context_characters is required")
        return self

    @classmethod
    def strict(cls, allowed_types, **overrides) -> RetrievalPolicy:
        """Only ``allowed_types`` may be requested; anything else is rejected."""
        return cls(
            allowed_source_types=frozenset(allowed_types),
            require_explicit_allowlist=True,
            **overrides,
        )

    @classmethod
    def permissive(cls, **overrides) -> RetrievalPolicy:
        """All known types allowed; disallowed requests are sanitized away."""
        return cls(
            allowed_source_types=ALL_SOURCE_TYPES,
            require_explicit_allowlist=False,
            **overrides,
        )

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> RetrievalPolicy:
        """Build a policy from the platform defaults in ``core.config``."""
        if settings is None:
            from core.config import settings
        values = {
            "similarity_threshold": settings.similarity_threshold,
            "top_k": settings.top_k,
            "max_context_tokens": settings.max_context_tokens,
            "max_chunks_per_source": settings.max_chunks_per_source,
            "max_sources": settings.max_sources,
            "embedding_model": settings.embedding_model,
        }
        if overrides.get("max_context_characters") is not None:
            values.pop("max_context_tokens")
        values.update(overrides)
        return cls(**values)


DEFAULT_RETRIEVAL_POLICY = RetrievalPolicy()


class RetrievalRequest(BaseModel):
    """A tenant/site scoped query. ``source_types=None`` means every allowed type."""

    tenant_id: str = ""
    site_id: str = ""
    query_text: str = ""
    source_types: list[str] | None = None


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class PromptBundle(BaseModel):
    """Single-shot rendering for completion APIs that take one prompt string."""

    system_prompt: str
    user_prompt: str
    full_prompt: str


class ChatPrompt(BaseModel):
    """Chat-style rendering: a list of role/content messages."""

    system_message: str
    messages: list[dict[str, str]] = Field(default_factory=list)


class PipelineResult(BaseModel):
    """Everything one pipeline run produces."""

    chunks: list[RetrievedChunk] = Field(default_factory=list)
    context_blocks: list[ContextBlock] = Field(default_factory=list)
    evidence: list[Evidence] = Field(default_factory=list)
    prompts: PromptBundle
    chat: ChatPrompt


class Answer(BaseModel):
    """Completion produced from an assembled prompt, with its citations."""

    text: str
    evidence: list[Evidence] = Field(default_factory=list)
    model: str = ""
    usage: dict = Field(default_factory=dict)
