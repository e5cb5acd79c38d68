"""Unit tests for evidence (citation) building."""

from datetime import datetime, timezone

import pytest

from conftest import make_retrieved
from core.models import SourceType
from retrieval.context_builder import ContextLimits, build_context_blocks
from retrieval.evidence import (
    build_evidence,
    build_evidence_from_chunks,
    evidence_to_metadata,
)


@pytest.fixture
def chunks():
    return [
        make_retrieved("p42-0", 0.90, entity_id="42", chunk_index=0, title="Headphones",
                       url="https://shop.test/p/42"),
        make_retrieved("p42-1", 0.80, entity_id="42", chunk_index=1),
        make_retrieved("ret-0", 0.85, entity_type=SourceType.POLICY, entity_id="returns"),
        make_retrieved("p7-0", 0.75, entity_id="7"),
    ]


class TestBuildEvidence:
    def test_one_record_per_block(self, chunks):
        blocks = build_context_blocks(chunks)
        evidence = build_evidence(blocks)

        assert len(evidence) == len(blocks)
        for block, ev in zip(blocks, evidence):
            assert (ev.source_type, ev.source_id) == (block.source_type, block.source_id)
            assert set(ev.chunk_ids) <= set(block.chunk_ids)
            assert ev.score == block.similarity

    def test_evidence_correspondence_is_unique(self, chunks):
        blocks = build_context_blocks(chunks, ContextLimits(max_chunks_per_source=1))
        evidence = build_evidence(blocks)
        for block in blocks:
            matches = [
                e for e in evidence
                if e.source_type == block.source_type and e.source_id == block.source_id
            ]
            assert len(matches) == 1

    def test_carries_title_and_url_but_no_text(self, chunks):
        evidence = build_evidence(build_context_blocks(chunks))
        first = evidence[0]
        assert first.title == "Headphones"
        assert first.url == "https://shop.test/p/42"
        assert "content" not in first.model_dump()

    def test_empty(self):
        assert build_evidence([]) == []


class TestBuildEvidenceFromChunks:
    def test_groups_by_source_sorted_by_score(self, chunks):
        evidence = build_evidence_from_chunks(chunks)

        assert [(e.source_type, e.source_id) for e in evidence] == [
            (SourceType.PRODUCT, "42"),
            (SourceType.POLICY, "returns"),
            (SourceType.PRODUCT, "7"),
        ]
        assert evidence[0].chunk_ids == ["p42-0", "p42-1"]
        assert evidence[0].score == pytest.approx(0.9)

    def test_updated_at_is_first_non_empty(self):
        updated = datetime(2024, 2, 1, tzinfo=timezone.utc)
        chunks = [
            make_retrieved("c0", 0.9, entity_id="42", chunk_index=0),
            make_retrieved("c1", 0.8, entity_id="42", chunk_index=1, source_updated_at=updated),
        ]

        from_chunks = build_evidence_from_chunks(chunks)
        from_blocks = build_evidence(build_context_blocks(chunks))

        assert from_chunks[0].source_updated_at == updated
        assert from_blocks[0].source_updated_at == updated

    def test_empty(self):
        assert build_evidence_from_chunks([]) == []


class TestEvidenceToMetadata:
    def test_json_ready(self):
        updated = datetime(2024, 1, 5, 12, tzinfo=timezone.utc)
        evidence = build_evidence_from_chunks(
            [make_retrieved("c1", 0.9, entity_id="42", source_updated_at=updated)]
        )

        metadata = evidence_to_metadata(evidence)

        assert metadata == [{
            "source_type": "product",
            "source_id": "42",
            "chunk_ids": ["c1"],
            "score": 0.9,
            "source_updated_at": "2024-01-05T12:00:00Z",
        }]
