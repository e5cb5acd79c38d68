"""Citation records derived from context blocks or raw chunks."""

from __future__ import annotations

from core.models import ContextBlock, Evidence, RetrievedChunk
from retrieval.context_builder import group_by_source


def build_evidence(blocks: list[ContextBlock]) -> list[Evidence]:
    """One evidence record per context block, in block order."""
    return [
        Evidence(
            source_type=block.source_type,
            source_id=block.source_id,
            chunk_ids=list(block.chunk_ids),
            score=block.similarity,
            title=block.title,
            url=block.url,
            source_updated_at=block.source_updated_at,
        )
        for block in blocks
    ]


def build_evidence_from_chunks(chunks: list[RetrievedChunk]) -> list[Evidence]:
    """Evidence grouped by source straight from retrieval, best score first."""
    evidence = []
    for group in group_by_source(chunks):
        evidence.append(
            Evidence(
                source_type=group.source_type,
                source_id=group.source_id,
                chunk_ids=[c.id for c in group.chunks],
                score=group.best_similarity,
                title=next((c.title for c in group.chunks if c.title), None),
                url=next((c.url for c in group.chunks if c.url), None),
                source_updated_at=next(
                    (c.source_updated_at for c in group.chunks if c.source_updated_at), None
                ),
            )
        )
    evidence.sort(key=lambda e: e.score, reverse=True)
    return evidence


def evidence_to_metadata(evidence: list[Evidence]) -> list[dict]:
    """JSON-ready evidence for storing in chat message metadata."""
    return [e.model_dump(mode="json", exclude_none=True) for e in evidence]
