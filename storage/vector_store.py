"""pgvector-backed similarity search over tenant/site scoped embeddings.

Two search strategies share one contract:

- ``IndexedSearch`` calls the ``search_embeddings`` database function
  (see ``sql/search_embeddings.sql``).
- ``ScanSearch`` runs the equivalent statement directly against the
  ``embeddings`` table.

``PostgresVectorStore.connect`` probes once for the function and picks the
strategy. Both strategies filter by tenant, site and entity type inside SQL
and only search the latest version of each source entity.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

import numpy as np
from sqlalchemy import text

from core.config import settings
from core.errors import ConfigurationError
from core.models import Chunk, SourceType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

TABLE_NAME = "embeddings"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Metadata keys the ingestion layer writes for titles and urls, by priority
TITLE_KEYS = ("product_title", "page_title", "title")
URL_KEYS = ("product_url", "page_url", "url")


@dataclass(frozen=True)
class SearchQuery:
    """Parameters of one similarity search. Tenant and site are mandatory."""

    embedding: list[float]
    max_distance: float
    limit: int
    tenant_id: str
    site_id: str
    entity_types: tuple[SourceType, ...]


@dataclass(frozen=True)
class SearchHit:
    chunk: Chunk
    distance: float


def _first_present(metadata: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable source_updated_at %r", value)
        return None


def vector_literal(embedding: list[float]) -> str:
    """Format an embedding as a pgvector text literal: ``[0.1,0.2,...]``."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def hit_from_row(row: Mapping[str, Any]) -> SearchHit:
    """Map an ``embeddings`` row (plus ``distance``) to a ``SearchHit``."""
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)

    chunk = Chunk(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        site_id=str(row["site_id"]),
        entity_type=SourceType(row["entity_type"]),
        entity_id=str(row["entity_id"]),
        version=row.get("version") or 1,
        content=row.get("content_text") or "",
        chunk_index=int(metadata.get("chunk_index") or 0),
        content_hash=metadata.get("chunk_hash") or "",
        source_updated_at=_parse_timestamp(metadata.get("source_updated_at")),
        title=_first_present(metadata, TITLE_KEYS),
        url=_first_present(metadata, URL_KEYS),
        metadata=metadata,
    )
    return SearchHit(chunk=chunk, distance=float(row["distance"]))


def _query_params(query: SearchQuery) -> dict[str, Any]:
    return {
        "embedding": vector_literal(query.embedding),
        "tenant_id": query.tenant_id,
        "site_id": query.site_id,
        "entity_types": [t.value for t in query.entity_types],
        "limit": query.limit,
        "max_distance": query.max_distance,
    }


class SearchStrategy(ABC):
    """One way of running a scoped nearest-neighbour search."""

    name: str = ""

    @abstractmethod
    async def search(self, query: SearchQuery) -> list[SearchHit]:
        """Return hits ordered by ascending distance."""


class IndexedSearch(SearchStrategy):
    """Calls the ``search_embeddings`` SQL function."""

    name = "indexed"

    def __init__(self, engine: AsyncEngine, function_name: str = "search_embeddings"):
        if not _IDENTIFIER.match(function_name):
            raise ConfigurationError(f"Invalid search function name: {function_name!r}")
        self._engine = engine
        self.function_name = function_name

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        statement = text(
            f"""
            SELECT * FROM {self.function_name}(
                CAST(CAST(:embedding AS text) AS vector),
                CAST(:tenant_id AS uuid),
                CAST(:site_id AS uuid),
                CAST(:entity_types AS text[]),
                :limit,
                :max_distance
            )
            """
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(statement, _query_params(query))
            rows = result.mappings().all()
        return [hit_from_row(row) for row in rows]


class ScanSearch(SearchStrategy):
    """Direct ``ORDER BY embedding <=> query`` scan of the embeddings table."""

    name = "scan"

    SQL = f"""
        SELECT
            e.id, e.site_id, e.tenant_id, e.entity_type, e.entity_id,
            e.content_text, e.model, e.version, e.metadata,
            e.created_at, e.updated_at,
            CAST(e.embedding <=> CAST(CAST(:embedding AS text) AS vector) AS float) AS distance
        FROM {TABLE_NAME} e
        WHERE
            e.embedding IS NOT NULL
            AND e.tenant_id = CAST(:tenant_id AS uuid)
            AND e.site_id = CAST(:site_id AS uuid)
            AND e.entity_type = ANY(CAST(:entity_types AS text[]))
            AND (e.embedding <=> CAST(CAST(:embedding AS text) AS vector)) <= :max_distance
            AND NOT EXISTS (
                SELECT 1 FROM {TABLE_NAME} newer
                WHERE newer.tenant_id = e.tenant_id
                  AND newer.site_id = e.site_id
                  AND newer.entity_type = e.entity_type
                  AND newer.entity_id = e.entity_id
                  AND newer.version > e.version
            )
        ORDER BY e.embedding <=> CAST(CAST(:embedding AS text) AS vector)
        LIMIT :limit
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        async with self._engine.connect() as conn:
            result = await conn.execute(text(self.SQL), _query_params(query))
            rows = result.mappings().all()
        return [hit_from_row(row) for row in rows]


class PostgresVectorStore:
    """Read-only vector store over the Postgres ``embeddings`` table."""

    def __init__(self, engine: AsyncEngine, strategy: SearchStrategy):
        self._engine = engine
        self.strategy = strategy

    @classmethod
    async def connect(
        cls, engine: AsyncEngine, function_name: str | None = None
    ) -> PostgresVectorStore:
        """Probe for the search function and build a store with the best strategy."""
        function_name = function_name or settings.search_function
        if await cls.has_search_function(engine, function_name):
            strategy: SearchStrategy = IndexedSearch(engine, function_name)
        else:
            logger.warning(
                "Search function '%s' not found, falling back to direct scan",
                function_name,
            )
            strategy = ScanSearch(engine)
        logger.info("Vector store using '%s' search strategy", strategy.name)
        return cls(engine, strategy)

    @staticmethod
    async def has_search_function(engine: AsyncEngine, function_name: str) -> bool:
        async with engine.connect() as conn:
            result = await conn.execute(
                text("SELECT EXISTS (SELECT 1 FROM pg_proc WHERE proname = :name)"),
                {"name": function_name},
            )
            return bool(result.scalar())

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        hits = await self.strategy.search(query)
        logger.debug("%s search returned %d hits", self.strategy.name, len(hits))
        return hits

    async def count(self, tenant_id: str, site_id: str) -> int:
        """Number of embedded chunks stored for one tenant/site."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(
                    f"SELECT count(*) FROM {TABLE_NAME} "
                    "WHERE tenant_id = CAST(:tenant_id AS uuid) "
                    "AND site_id = CAST(:site_id AS uuid)"
                ),
                {"tenant_id": tenant_id, "site_id": site_id},
            )
            return int(result.scalar() or 0)

    async def close(self) -> None:
        await self._engine.dispose()


def create_engine_from_settings() -> AsyncEngine:
    """Build an asyncpg-backed SQLAlchemy engine from ``core.config``."""
    from sqlalchemy.ext.asyncio import create_async_engine

    connect_args = {"ssl": "require"} if settings.db_ssl else {}
    return create_async_engine(
        settings.async_database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def cosine_distance(query: np.ndarray, vector: np.ndarray) -> float:
    """Cosine distance in [0, 2]; a zero vector is treated as orthogonal."""
    query_norm = np.linalg.norm(query)
    vector_norm = np.linalg.norm(vector)
    if query_norm == 0 or vector_norm == 0:
        return 1.0
    cosine = float(np.dot(query, vector) / (query_norm * vector_norm))
    return 1.0 - min(1.0, max(-1.0, cosine))


class InMemoryVectorStore:
    """numpy-backed store with the same search contract as ``PostgresVectorStore``.

    Used by the offline harness and tests.
    """

    def __init__(self, chunks: list[Chunk] | None = None):
        self._chunks: list[Chunk] = []
        if chunks:
            self.add_chunks(chunks)

    def add_chunks(self, chunks: list[Chunk]) -> int:
        """Store chunks with embeddings. Returns count added."""
        if not chunks:
            return 0
        for chunk in chunks:
            if not chunk.embedding:
                raise ValueError(f"Chunk {chunk.id} has no embedding")
        self._chunks.extend(chunks)
        logger.info("Added %d chunks to in-memory store", len(chunks))
        return len(chunks)

    def delete_entity(
        self, tenant_id: str, site_id: str, entity_type: SourceType, entity_id: str
    ) -> int:
        """Remove every version of one source entity. Returns count deleted."""
        keep = [
            c for c in self._chunks
            if not (
                c.tenant_id == tenant_id
                and c.site_id == site_id
                and c.entity_type == entity_type
                and c.entity_id == entity_id
            )
        ]
        deleted = len(self._chunks) - len(keep)
        self._chunks = keep
        return deleted

    def _latest_versions(self) -> dict[tuple, int]:
        latest: dict[tuple, int] = {}
        for c in self._chunks:
            key = (c.tenant_id, c.site_id, c.entity_type, c.entity_id)
            latest[key] = max(latest.get(key, 0), c.version)
        return latest

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        latest = self._latest_versions()
        query_vec = np.asarray(query.embedding, dtype=float)
        allowed = set(query.entity_types)

        hits = []
        for chunk in self._chunks:
            if chunk.tenant_id != query.tenant_id or chunk.site_id != query.site_id:
                continue
            if chunk.entity_type not in allowed:
                continue
            key = (chunk.tenant_id, chunk.site_id, chunk.entity_type, chunk.entity_id)
            if chunk.version < latest[key]:
                continue
            distance = cosine_distance(query_vec, np.asarray(chunk.embedding, dtype=float))
            if distance <= query.max_distance:
                hits.append(SearchHit(chunk=chunk, distance=distance))

        hits.sort(key=lambda h: h.distance)
        return hits[: query.limit]

    async def count(self, tenant_id: str, site_id: str) -> int:
        return sum(1 for c in self._chunks if c.tenant_id == tenant_id and c.site_id == site_id)

    async def close(self) -> None:
        return None
