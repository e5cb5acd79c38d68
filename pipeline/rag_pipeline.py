"""Single entry point chaining guardrails, retrieval, context, evidence and prompts."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.config import settings
from core.models import (
    DEFAULT_RETRIEVAL_POLICY,
    ChatTurn,
    PipelineResult,
    RetrievalPolicy,
    RetrievalRequest,
)
from generation.prompts import (
    DEFAULT_SYSTEM_TEMPLATE,
    assemble_conversation_prompt,
    assemble_prompt,
    check_prompt_inputs,
)
from retrieval.context_builder import build_context_blocks
from retrieval.evidence import build_evidence
from retrieval.guardrails import resolve_source_types
from retrieval.retriever import Retriever

if TYPE_CHECKING:
    from retrieval.embeddings import EmbeddingProvider
    from retrieval.retriever import VectorSearch

logger = logging.getLogger(__name__)


class RAGPipeline:
    """Guardrails -> retrieval -> context -> (evidence, prompts).

    Stateless between calls; concurrent ``run`` calls share nothing but the
    injected collaborators. Any stage's exception propagates and no partial
    result is returned.
    """

    def __init__(self, embedder: EmbeddingProvider, vector_store: VectorSearch):
        self.retriever = Retriever(embedder, vector_store)

    async def run(
        self,
        request: RetrievalRequest,
        policy: RetrievalPolicy = DEFAULT_RETRIEVAL_POLICY,
        history: list[ChatTurn] | None = None,
        system_template: str = DEFAULT_SYSTEM_TEMPLATE,
    ) -> PipelineResult:
        """Run the full pipeline for one tenant/site scoped query.

        Raises:
            ValidationError: guardrail violation (before any I/O)
            ConfigurationError: blank system template or bad history turn
                (before any I/O)
            Exception: embedding or vector store errors, unchanged
        """
        source_types = resolve_source_types(request, policy)
        check_prompt_inputs(system_template, history)

        chunks = await self.retriever.retrieve(
            tenant_id=request.tenant_id,
            site_id=request.site_id,
            query_text=request.query_text,
            top_k=policy.top_k,
            similarity_threshold=policy.similarity_threshold,
            source_types=source_types,
            model=policy.embedding_model,
        )

        context_blocks = build_context_blocks(chunks, policy)
        evidence = build_evidence(context_blocks)
        prompts = assemble_prompt(request.query_text, context_blocks, system_template)
        chat = assemble_conversation_prompt(
            request.query_text, history, context_blocks, system_template
        )

        logger.info(
            "RAG pipeline for site %s: %d chunks, %d blocks",
            request.site_id, len(chunks), len(context_blocks),
        )
        return PipelineResult(
            chunks=chunks,
            context_blocks=context_blocks,
            evidence=evidence,
            prompts=prompts,
            chat=chat,
        )


async def build_pipeline_from_settings(openai_client=None) -> RAGPipeline:
    """Wire the OpenAI embedder and Postgres vector store from ``core.config``."""
    from retrieval.embeddings import OpenAIEmbedder, RetryingEmbedder
    from storage.vector_store import PostgresVectorStore, create_engine_from_settings

    embedder = OpenAIEmbedder(openai_client, expected_dimensions=settings.embedding_dimensions)
    if settings.provider_max_retries > 0:
        embedder = RetryingEmbedder(
            embedder,
            max_retries=settings.provider_max_retries,
            max_wait=settings.provider_retry_max_wait,
        )

    store = await PostgresVectorStore.connect(create_engine_from_settings())
    return RAGPipeline(embedder, store)


async def run_rag_pipeline(
    pipeline: RAGPipeline,
    tenant_id: str,
    site_id: str,
    query_text: str,
    policy: RetrievalPolicy = DEFAULT_RETRIEVAL_POLICY,
    source_types: list[str] | None = None,
    history: list[ChatTurn] | None = None,
) -> PipelineResult:
    """Convenience wrapper building the ``RetrievalRequest``."""
    request = RetrievalRequest(
        tenant_id=tenant_id or "",
        site_id=site_id or "",
        query_text=query_text or "",
        source_types=source_types,
    )
    return await pipeline.run(request, policy, history)
