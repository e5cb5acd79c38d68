"""Tenant/site scoped similarity retrieval."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from core.config import settings
from core.errors import GuardrailRule, ValidationError
from core.models import ALL_SOURCE_TYPES, RetrievedChunk, SourceType
from retrieval.similarity import distance_to_similarity, similarity_to_distance
from storage.vector_store import SearchHit, SearchQuery

if TYPE_CHECKING:
    from retrieval.embeddings import EmbeddingProvider

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
DEFAULT_SIMILARITY_THRESHOLD = 0.7


class VectorSearch(Protocol):
    async def search(self, query: SearchQuery) -> list[SearchHit]: ...


class Retriever:
    """Embeds a query and searches one tenant/site's chunks.

    The vector store applies tenant, site and type filters itself; the
    similarity threshold is re-checked here on the converted scores.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: VectorSearch,
        candidate_multiplier: int | None = None,
    ):
        self.embedder = embedder
        self.vector_store = vector_store
        self.candidate_multiplier = candidate_multiplier or settings.candidate_multiplier

    async def retrieve(
        self,
        tenant_id: str,
        site_id: str,
        query_text: str,
        top_k: int = DEFAULT_TOP_K,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        source_types: list[SourceType] | None = None,
        model: str | None = None,
    ) -> list[RetrievedChunk]:
        """Return chunks at or above ``similarity_threshold``, best first.

        Args:
            tenant_id: Owning tenant; required
            site_id: Owning site; required
            query_text: Free-text query; must not be blank
            top_k: Maximum number of chunks returned
            similarity_threshold: Minimum similarity in [0, 1]
            source_types: Entity types to search (default: all). An empty
                list searches nothing.
            model: Embedding model (default: settings.embedding_model)

        Returns:
            Retrieved chunks ordered by descending similarity; empty when
            nothing is relevant

        Raises:
            ValidationError: missing tenant or site, or a blank query
            ValueError: non-positive top_k
        """
        if not tenant_id or not tenant_id.strip():
            raise ValidationError(GuardrailRule.MISSING_TENANT, "tenant_id is required")
        if not site_id or not site_id.strip():
            raise ValidationError(GuardrailRule.MISSING_SITE, "site_id is required")
        if not query_text or not query_text.strip():
            raise ValidationError(GuardrailRule.EMPTY_QUERY, "query_text is required")
        if top_k <= 0:
            raise ValueError(f"top_k must be positive, got {top_k}")

        if source_types is None:
            source_types = sorted(ALL_SOURCE_TYPES, key=lambda t: t.value)
        if not source_types:
            logger.info("No source types to search for site %s", site_id)
            return []

        model = model or settings.embedding_model
        query_embedding = await self.embedder.embed(query_text, model)

        query = SearchQuery(
            embedding=query_embedding,
            max_distance=similarity_to_distance(similarity_threshold),
            limit=top_k * self.candidate_multiplier,
            tenant_id=tenant_id,
            site_id=site_id,
            entity_types=tuple(source_types),
        )
        hits = await self.vector_store.search(query)

        chunks = []
        for hit in hits:
            similarity = distance_to_similarity(hit.distance)
            if similarity < similarity_threshold:
                continue
            chunks.append(
                RetrievedChunk(
                    **hit.chunk.model_dump(), similarity=similarity, distance=hit.distance
                )
            )

        chunks.sort(key=lambda c: c.similarity, reverse=True)
        chunks = chunks[:top_k]

        if not chunks:
            logger.warning("No chunks above %.2f for site %s", similarity_threshold, site_id)
        else:
            logger.info(
                "Retrieved %d/%d chunks above %.2f for site %s",
                len(chunks), len(hits), similarity_threshold, site_id,
            )
        return chunks
