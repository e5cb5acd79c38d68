"""End-to-end tests for the RAG pipeline over the in-memory store."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import SITE_A, TENANT_A, TENANT_B, make_chunk
from core.errors import ConfigurationError, GuardrailRule, ValidationError
from core.models import ChatTurn, RetrievalPolicy, RetrievalRequest, SourceType
from generation.prompts import DEFAULT_SYSTEM_TEMPLATE
from pipeline.rag_pipeline import RAGPipeline, build_pipeline_from_settings, run_rag_pipeline
from retrieval.guardrails import PERMISSIVE_POLICY, STRICT_POLICY
from storage.vector_store import InMemoryVectorStore


def req(query="wireless headphones", tenant=TENANT_A, site=SITE_A, types=None):
    return RetrievalRequest(tenant_id=tenant, site_id=site, query_text=query, source_types=types)


@pytest.fixture
def shop_store():
    return InMemoryVectorStore([
        make_chunk("p42-0", 0.9, entity_id="42", chunk_index=0,
                   content="Wireless headphones with 30h battery.", title="Headphones"),
        make_chunk("p42-1", 0.8, entity_id="42", chunk_index=1,
                   content="Bluetooth 5.3, USB-C charging."),
        make_chunk("ret-0", 0.3, entity_type=SourceType.POLICY, entity_id="returns",
                   content="Returns within 30 days."),
        make_chunk("other-tenant", 0.99, tenant_id=TENANT_B, entity_id="42",
                   content="Wireless headphones with 30h battery."),
    ])


class TestRAGPipeline:
    async def test_full_run(self, embedder, shop_store):
        result = await RAGPipeline(embedder, shop_store).run(req())

        assert [c.id for c in result.chunks] == ["p42-0", "p42-1"]
        assert len(result.context_blocks) == 1
        block = result.context_blocks[0]
        assert block.content == (
            "Wireless headphones with 30h battery.\n\nBluetooth 5.3, USB-C charging."
        )
        assert len(result.evidence) == 1
        assert result.evidence[0].chunk_ids == ["p42-0", "p42-1"]
        assert result.evidence[0].title == "Headphones"
        assert "[Source 1] | Type: product | Title: Headphones" in result.prompts.system_prompt
        assert result.chat.messages[-1] == {"role": "user", "content": "wireless headphones"}

    async def test_never_returns_other_tenant_chunks(self, embedder, shop_store):
        result = await RAGPipeline(embedder, shop_store).run(req())
        assert all(c.tenant_id == TENANT_A for c in result.chunks)
        assert "other-tenant" not in {cid for b in result.context_blocks for cid in b.chunk_ids}

    async def test_no_relevant_content_is_not_an_error(self, embedder, shop_store):
        policy = RetrievalPolicy(similarity_threshold=0.95)

        result = await RAGPipeline(embedder, shop_store).run(req(), policy)

        assert result.chunks == []
        assert result.context_blocks == []
        assert result.evidence == []
        assert result.prompts.full_prompt == (
            f"{DEFAULT_SYSTEM_TEMPLATE}\n\nUser Question:\nwireless headphones"
        )
        assert [m["role"] for m in result.chat.messages] == ["system", "user"]

    async def test_max_sources_drops_lower_sources(self, embedder):
        store = InMemoryVectorStore([
            make_chunk(f"c{i}", s, entity_id=f"p{i}")
            for i, s in enumerate([0.75, 0.93, 0.81, 0.88, 0.79])
        ])
        policy = RetrievalPolicy(max_sources=2)

        result = await RAGPipeline(embedder, store).run(req(), policy)

        assert len(result.chunks) == 5
        assert [b.source_id for b in result.context_blocks] == ["p1", "p3"]
        assert [e.source_id for e in result.evidence] == ["p1", "p3"]

    async def test_strict_policy_rejects_faq_before_io(self, embedder):
        store = MagicMock()
        store.search = AsyncMock()

        with pytest.raises(ValidationError) as exc_info:
            await RAGPipeline(embedder, store).run(req(types=["faq"]), STRICT_POLICY)

        assert exc_info.value.rule is GuardrailRule.DISALLOWED_SOURCE_TYPE
        embedder.embed.assert_not_awaited()
        store.search.assert_not_awaited()

    async def test_permissive_policy_drops_faq_and_returns_empty(self, embedder, shop_store):
        result = await RAGPipeline(embedder, shop_store).run(req(types=["faq"]), PERMISSIVE_POLICY)

        assert result.chunks == []
        assert result.context_blocks == []
        embedder.embed.assert_not_awaited()

    async def test_permissive_policy_keeps_allowed_types(self, embedder, shop_store):
        result = await RAGPipeline(embedder, shop_store).run(
            req(types=["faq", "product"]), PERMISSIVE_POLICY
        )
        assert {c.entity_type for c in result.chunks} == {SourceType.PRODUCT}

    async def test_empty_type_list_searches_every_type(self, embedder, shop_store):
        result = await RAGPipeline(embedder, shop_store).run(req(types=[]))

        assert [c.id for c in result.chunks] == ["p42-0", "p42-1"]
        embedder.embed.assert_awaited_once()

    async def test_bad_prompt_inputs_rejected_before_io(self, embedder):
        store = MagicMock()
        store.search = AsyncMock()
        pipeline = RAGPipeline(embedder, store)

        with pytest.raises(ConfigurationError):
            await pipeline.run(req(), system_template="   ")
        with pytest.raises(ConfigurationError):
            await pipeline.run(req(), history=[{"role": "system", "content": "x"}])

        embedder.embed.assert_not_awaited()
        store.search.assert_not_awaited()

    @pytest.mark.parametrize("tenant,site", [("", SITE_A), (TENANT_A, ""), ("  ", "  ")])
    async def test_missing_scope_rejected_before_io(self, embedder, tenant, site):
        store = MagicMock()
        store.search = AsyncMock()

        with pytest.raises(ValidationError):
            await RAGPipeline(embedder, store).run(req(tenant=tenant, site=site))

        embedder.embed.assert_not_awaited()
        store.search.assert_not_awaited()

    async def test_provider_error_short_circuits(self, shop_store):
        embedder = MagicMock()
        embedder.embed = AsyncMock(side_effect=ConnectionError("openai unreachable"))

        with pytest.raises(ConnectionError):
            await RAGPipeline(embedder, shop_store).run(req())

    async def test_blank_template_raises_configuration_error(self, embedder, shop_store):
        with pytest.raises(ConfigurationError):
            await RAGPipeline(embedder, shop_store).run(req(), system_template=" ")

    async def test_history_included_in_chat(self, embedder, shop_store):
        history = [ChatTurn(role="user", content="hi"), ChatTurn(role="assistant", content="hey")]
        result = await RAGPipeline(embedder, shop_store).run(req(), history=history)
        assert [m["role"] for m in result.chat.messages] == [
            "system", "system", "user", "assistant", "user",
        ]

    async def test_oversized_single_chunk_kept(self, embedder):
        store = InMemoryVectorStore([make_chunk("big", 0.9, content="word " * 5000)])
        policy = RetrievalPolicy(max_context_tokens=500)

        result = await RAGPipeline(embedder, store).run(req(), policy)

        assert len(result.context_blocks) == 1
        assert result.context_blocks[0].content == ("word " * 5000).strip()

    async def test_concurrent_runs_are_independent(self, embedder, shop_store):
        pipeline = RAGPipeline(embedder, shop_store)
        results = await asyncio.gather(
            pipeline.run(req(tenant=TENANT_A)),
            pipeline.run(req(tenant=TENANT_B)),
        )
        assert {c.tenant_id for c in results[0].chunks} == {TENANT_A}
        assert {c.tenant_id for c in results[1].chunks} == {TENANT_B}

    async def test_cancellation_propagates(self, shop_store):
        embedder = MagicMock()
        embedder.embed = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await RAGPipeline(embedder, shop_store).run(req())


class TestRunRagPipeline:
    async def test_builds_request(self, embedder, shop_store):
        pipeline = RAGPipeline(embedder, shop_store)
        result = await run_rag_pipeline(
            pipeline, TENANT_A, SITE_A, "wireless headphones", source_types=["product"]
        )
        assert [c.id for c in result.chunks] == ["p42-0", "p42-1"]

    async def test_none_ids_rejected(self, embedder, shop_store):
        with pytest.raises(ValidationError):
            await run_rag_pipeline(RAGPipeline(embedder, shop_store), None, SITE_A, "q")


class TestBuildPipelineFromSettings:
    async def test_wires_retrying_embedder_when_enabled(self):
        store = MagicMock()
        with patch("pipeline.rag_pipeline.settings") as mock_settings, \
             patch("storage.vector_store.create_engine_from_settings") as mock_engine, \
             patch("storage.vector_store.PostgresVectorStore.connect",
                   AsyncMock(return_value=store)):
            mock_settings.embedding_dimensions = 1536
            mock_settings.provider_max_retries = 2
            mock_settings.provider_retry_max_wait = 5.0

            pipeline = await build_pipeline_from_settings(openai_client=MagicMock())

        from retrieval.embeddings import RetryingEmbedder

        assert isinstance(pipeline.retriever.embedder, RetryingEmbedder)
        assert pipeline.retriever.embedder.max_retries == 2
        assert pipeline.retriever.vector_store is store
        mock_engine.assert_called_once()
