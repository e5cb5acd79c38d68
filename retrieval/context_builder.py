"""Builds budgeted, per-source context blocks from retrieved chunks."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from core.models import (
    DEFAULT_RETRIEVAL_POLICY,
    ContextBlock,
    MergeStrategy,
    RetrievalPolicy,
    RetrievedChunk,
    SourceType,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
CHUNK_SEPARATOR = "\n\n"
SECTION_SEPARATOR = "\n\n"


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Rough token count: ~4 characters per token for English text."""
    return math.ceil(len(text) / chars_per_token)


@dataclass(frozen=True)
class ContextLimits:
    """Budgets applied by ``build_context_blocks``.

    Exactly one of ``max_tokens`` / ``max_characters`` is set.
    """

    max_tokens: int | None = 4000
    max_characters: int | None = None
    max_chunks_per_source: int = 3
    max_sources: int = 5
    merge_strategy: MergeStrategy = "concatenate"

    def __post_init__(self):
        if (self.max_tokens is None) == (self.max_characters is None):
            raise ValueError("exactly one of max_tokens or max_characters must be set")
        if self.max_chunks_per_source <= 0 or self.max_sources <= 0:
            raise ValueError("max_chunks_per_source and max_sources must be positive")

    @classmethod
    def from_policy(cls, policy: RetrievalPolicy) -> ContextLimits:
        return cls(
            max_tokens=policy.max_context_tokens,
            max_characters=policy.max_context_characters,
            max_chunks_per_source=policy.max_chunks_per_source,
            max_sources=policy.max_sources,
            merge_strategy=policy.merge_strategy,
        )


@dataclass
class _SourceGroup:
    source_type: SourceType
    source_id: str
    chunks: list[RetrievedChunk]

    @property
    def best_similarity(self) -> float:
        return max(c.similarity for c in self.chunks)


def group_by_source(chunks: list[RetrievedChunk]) -> list[_SourceGroup]:
    """Group chunks by (entity type, entity id), in order of first appearance."""
    groups: dict[tuple[SourceType, str], _SourceGroup] = {}
    for chunk in chunks:
        key = chunk.source_key
        if key not in groups:
            groups[key] = _SourceGroup(chunk.entity_type, chunk.entity_id, [])
        groups[key].chunks.append(chunk)
    return list(groups.values())


def _first_value(chunks: list[RetrievedChunk], attr: str):
    for chunk in chunks:
        value = getattr(chunk, attr)
        if value:
            return value
    return None


def merge_group(
    group: _SourceGroup, strategy: MergeStrategy = "concatenate"
) -> ContextBlock:
    """Merge one source's chunks (already in chunk-index order) into a block."""
    sections = [c.content.strip() for c in group.chunks if c.content.strip()]

    if strategy == "concatenate":
        content = CHUNK_SEPARATOR.join(sections)
    elif strategy == "separate":
        content = CHUNK_SEPARATOR.join(
            f"[Part {i}]\n{section}" for i, section in enumerate(sections, start=1)
        )
    else:
        raise ValueError(f"Unknown merge strategy: {strategy!r}")

    return ContextBlock(
        source_type=group.source_type,
        source_id=group.source_id,
        content=content,
        sections=sections,
        chunk_ids=[c.id for c in group.chunks],
        chunk_indices=[c.chunk_index for c in group.chunks],
        similarity=group.best_similarity,
        title=_first_value(group.chunks, "title"),
        url=_first_value(group.chunks, "url"),
        source_updated_at=_first_value(group.chunks, "source_updated_at"),
    )


def build_context_blocks(
    chunks: list[RetrievedChunk],
    limits: ContextLimits | RetrievalPolicy | None = None,
    token_counter: Callable[[str], int] = estimate_tokens,
) -> list[ContextBlock]:
    """Collapse retrieved chunks into per-source context blocks within budget.

    Steps:
    1. Group chunks by source
    2. Keep each source's first ``max_chunks_per_source`` chunks by chunk index
    3. Rank sources by best similarity and keep ``max_sources``
    4. Merge each source into one block
    5. Add blocks in rank order while they fit the token/character budget

    The first block is always kept, even when it alone exceeds the budget;
    nothing is added after a block that does not fit. Blocks are never
    partially truncated. Only block content counts against the budget; the
    headers and separators added by ``format_context_blocks`` do not.

    Args:
        chunks: Retrieved chunks (any order)
        limits: ``ContextLimits`` or a ``RetrievalPolicy`` (default policy if None)
        token_counter: Token estimator used with a token budget

    Returns:
        Context blocks ordered by descending best similarity
    """
    if limits is None:
        limits = DEFAULT_RETRIEVAL_POLICY
    if isinstance(limits, RetrievalPolicy):
        limits = ContextLimits.from_policy(limits)

    if not chunks:
        return []

    groups = group_by_source(chunks)
    for group in groups:
        group.chunks = sorted(group.chunks, key=lambda c: c.chunk_index)[
            : limits.max_chunks_per_source
        ]

    # Stable sort: equal scores keep first-appearance order
    groups.sort(key=lambda g: g.best_similarity, reverse=True)
    groups = groups[: limits.max_sources]

    if limits.max_characters is not None:
        budget = limits.max_characters
        measure: Callable[[str], int] = len
    else:
        budget = limits.max_tokens
        measure = token_counter

    blocks: list[ContextBlock] = []
    used = 0
    for group in groups:
        block = merge_group(group, limits.merge_strategy)
        size = measure(block.content)

        if blocks and used + size > budget:
            logger.debug(
                "Context budget reached at %d/%d after %d blocks", used, budget, len(blocks)
            )
            break

        blocks.append(block)
        used += size
        if used > budget:
            logger.info("First context block (%d) exceeds budget %d", size, budget)
            break

    logger.info(
        "Built %d context blocks from %d chunks (%d sources)",
        len(blocks), len(chunks), len(groups),
    )
    return blocks


def format_context_blocks(blocks: list[ContextBlock]) -> str:
    """Render blocks as labeled sections for prompt injection."""
    if not blocks:
        return ""

    sections = []
    for index, block in enumerate(blocks, start=1):
        header = [f"[Source {index}]", f"Type: {block.source_type.value}"]
        if block.title:
            header.append(f"Title: {block.title}")
        if block.url:
            header.append(f"URL: {block.url}")
        if block.source_updated_at:
            header.append(f"Updated: {block.source_updated_at.date().isoformat()}")
        sections.append(" | ".join(header) + "\n" + block.content)

    return SECTION_SEPARATOR.join(sections)
