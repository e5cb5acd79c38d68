"""Shared fixtures: chunk factory, fake embedder and a mock async engine."""

from __future__ import annotations

import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.models import Chunk, RetrievedChunk, SourceType
from storage.vector_store import InMemoryVectorStore

TENANT_A = "11111111-1111-1111-1111-111111111111"
TENANT_B = "22222222-2222-2222-2222-222222222222"
SITE_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
SITE_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
QUERY_VECTOR = [1.0, 0.0]


def vector_for_similarity(similarity: float) -> list[float]:
    """2-d unit vector whose similarity to QUERY_VECTOR is ``similarity``.

    similarity = 1 - (1 - cos) / 2, so cos = 2 * similarity - 1.
    """
    cos = 2 * similarity - 1
    return [cos, math.sqrt(max(0.0, 1 - cos * cos))]


def make_chunk(
    chunk_id: str,
    similarity: float = 0.9,
    entity_type: SourceType = SourceType.PRODUCT,
    entity_id: str = "p1",
    chunk_index: int = 0,
    content: str | None = None,
    tenant_id: str = TENANT_A,
    site_id: str = SITE_A,
    version: int = 1,
    **kwargs,
) -> Chunk:
    return Chunk(
        id=chunk_id,
        tenant_id=tenant_id,
        site_id=site_id,
        entity_type=entity_type,
        entity_id=entity_id,
        version=version,
        embedding=vector_for_similarity(similarity),
        content=content if content is not None else f"Content of {chunk_id}",
        chunk_index=chunk_index,
        **kwargs,
    )


def make_retrieved(chunk_id: str, similarity: float = 0.9, **kwargs) -> RetrievedChunk:
    chunk = make_chunk(chunk_id, similarity=similarity, **kwargs)
    return RetrievedChunk(
        **chunk.model_dump(), similarity=similarity, distance=2 * (1 - similarity)
    )


@pytest.fixture
def embedder():
    """Embedding provider that always returns QUERY_VECTOR."""
    mock = MagicMock()
    mock.embed = AsyncMock(return_value=QUERY_VECTOR)
    return mock


@pytest.fixture
def store():
    return InMemoryVectorStore()


@pytest.fixture
def mock_engine():
    """AsyncEngine mock: ``async with engine.connect() as conn``."""
    engine = MagicMock()
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=MagicMock())
    engine.connect.return_value.__aenter__ = AsyncMock(return_value=conn)
    engine.connect.return_value.__aexit__ = AsyncMock(return_value=False)
    engine.dispose = AsyncMock()
    return engine, conn
