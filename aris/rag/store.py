"""
Knowledge Store
===============

Persistence for knowledge sources (one row per ingested content item)
and their embedded chunks.

Two backends:
- PgVectorKnowledgeStore: PostgreSQL + pgvector (production)
- InMemoryKnowledgeStore: pure Python cosine similarity (dev, tests)

Tenant scope is part of every query: VectorQuery cannot be built
without an organization id, and every read or delete filters on it.
"""

import asyncio
import logging
import math
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg2.extras import Json, RealDictCursor, execute_values

from ..data.database import Database
from .models import (
    KnowledgeBaseEntry,
    KnowledgeSource,
    Metadata,
    RetrievedChunk,
    SourceType,
)

logger = logging.getLogger(__name__)


class TenantScopeError(ValueError):
    """A store operation was attempted without an organization id."""
    pass


@dataclass(frozen=True)
class VectorQuery:
    """A tenant-scoped similarity query."""
    organization_id: str
    embedding: List[float]
    source_types: Optional[Tuple[SourceType, ...]] = None
    metadata_filters: Metadata = field(default_factory=dict)
    limit: int = 10
    similarity_threshold: float = 0.0

    def __post_init__(self):
        if not self.organization_id or not str(self.organization_id).strip():
            raise TenantScopeError("organization_id is required for every vector query")
        if self.limit <= 0:
            raise ValueError("limit must be positive")


def _require_org(organization_id: str) -> None:
    if not organization_id or not str(organization_id).strip():
        raise TenantScopeError("organization_id is required")


def cosine_similarity(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class KnowledgeStore(ABC):
    """Abstract async knowledge store."""

    @abstractmethod
    async def find_source(
        self, organization_id: str, source_type: SourceType, source_id: str
    ) -> Optional[KnowledgeSource]:
        pass

    @abstractmethod
    async def upsert_source(self, source: KnowledgeSource) -> KnowledgeSource:
        """Insert or update keyed by (organization_id, source_type, source_id)."""
        pass

    @abstractmethod
    async def replace_chunks(
        self, organization_id: str, knowledge_base_id: str, entries: List[KnowledgeBaseEntry]
    ) -> int:
        """Drop the source's current chunks and store `entries` in their place."""
        pass

    @abstractmethod
    async def similarity_search(self, query: VectorQuery) -> List[RetrievedChunk]:
        pass

    @abstractmethod
    async def delete_source(self, organization_id: str, knowledge_base_id: str) -> bool:
        pass

    @abstractmethod
    async def list_sources(
        self,
        organization_id: str,
        source_type: Optional[SourceType] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[KnowledgeSource]:
        pass

    @abstractmethod
    async def count_chunks(self, organization_id: str, knowledge_base_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def log_query(
        self,
        organization_id: str,
        query: str,
        result_count: int,
        processing_time_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        pass

    @abstractmethod
    async def get_stats(self, organization_id: str) -> Dict[str, Any]:
        pass

    def init(self) -> None:
        """Acquire backend resources."""

    def shutdown(self) -> None:
        """Release backend resources."""


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryKnowledgeStore(KnowledgeStore):
    """Dictionary-backed store with brute-force cosine similarity."""

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock
        self._sources: Dict[str, KnowledgeSource] = {}
        self._keys: Dict[Tuple[str, str, str], str] = {}
        self._chunks: Dict[str, List[KnowledgeBaseEntry]] = {}
        self.query_log: List[Dict[str, Any]] = []

    async def find_source(self, organization_id, source_type, source_id):
        _require_org(organization_id)
        kb_id = self._keys.get((organization_id, SourceType(source_type).value, source_id))
        return replace(self._sources[kb_id]) if kb_id else None

    async def upsert_source(self, source):
        _require_org(source.organization_id)
        key = (source.organization_id, source.source_type.value, source.source_id)
        now = self._clock()
        kb_id = self._keys.get(key)
        if kb_id is None:
            stored = replace(source, id=str(uuid.uuid4()), created_at=now, updated_at=now)
            self._keys[key] = stored.id
        else:
            existing = self._sources[kb_id]
            stored = replace(source, id=kb_id, created_at=existing.created_at, updated_at=now)
        self._sources[stored.id] = stored
        return replace(stored)

    async def replace_chunks(self, organization_id, knowledge_base_id, entries):
        _require_org(organization_id)
        source = self._sources.get(knowledge_base_id)
        if source is None or source.organization_id != organization_id:
            raise TenantScopeError(f"Knowledge source {knowledge_base_id} not found for organization")
        self._chunks[knowledge_base_id] = [
            replace(e, id=e.id or str(uuid.uuid4()), organization_id=organization_id) for e in entries
        ]
        return len(entries)

    async def similarity_search(self, query):
        allowed = {s.value for s in query.source_types} if query.source_types else None
        results: List[RetrievedChunk] = []

        for kb_id, entries in self._chunks.items():
            source = self._sources[kb_id]
            if source.organization_id != query.organization_id or source.status != "active":
                continue
            if allowed is not None and source.source_type.value not in allowed:
                continue
            if any(source.metadata.get(k) != v for k, v in query.metadata_filters.items()):
                continue

            for entry in entries:
                if entry.organization_id != query.organization_id:
                    continue
                similarity = cosine_similarity(query.embedding, entry.embedding)
                if similarity < query.similarity_threshold:
                    continue
                results.append(RetrievedChunk(
                    id=entry.id,
                    content=entry.content,
                    similarity=similarity,
                    knowledge_base_id=kb_id,
                    source_type=source.source_type,
                    source_id=source.source_id,
                    title=source.title,
                    chunk_index=entry.chunk_index,
                    token_count=entry.token_count,
                    metadata={**source.metadata, **entry.metadata},
                ))

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:query.limit]

    async def delete_source(self, organization_id, knowledge_base_id):
        _require_org(organization_id)
        source = self._sources.get(knowledge_base_id)
        if source is None or source.organization_id != organization_id:
            return False
        del self._sources[knowledge_base_id]
        self._chunks.pop(knowledge_base_id, None)
        self._keys.pop((organization_id, source.source_type.value, source.source_id), None)
        return True

    async def list_sources(self, organization_id, source_type=None, updated_before=None):
        _require_org(organization_id)
        sources = []
        for source in self._sources.values():
            if source.organization_id != organization_id:
                continue
            if source_type is not None and source.source_type != SourceType(source_type):
                continue
            if updated_before is not None and source.updated_at >= updated_before:
                continue
            sources.append(replace(source))
        return sources

    async def count_chunks(self, organization_id, knowledge_base_id=None):
        _require_org(organization_id)
        total = 0
        for kb_id, entries in self._chunks.items():
            if knowledge_base_id is not None and kb_id != knowledge_base_id:
                continue
            total += sum(1 for e in entries if e.organization_id == organization_id)
        return total

    async def log_query(self, organization_id, query, result_count, processing_time_ms, metadata=None):
        _require_org(organization_id)
        query_id = str(uuid.uuid4())
        self.query_log.append({
            "id": query_id,
            "organization_id": organization_id,
            "query": query,
            "result_count": result_count,
            "processing_time_ms": processing_time_ms,
            "metadata": metadata or {},
        })
        return query_id

    async def get_stats(self, organization_id):
        _require_org(organization_id)
        sources = [s for s in self._sources.values() if s.organization_id == organization_id]
        chunks = [e for s in sources for e in self._chunks.get(s.id, [])]
        return {
            "total_sources": len(sources),
            "sources_by_type": dict(Counter(s.source_type.value for s in sources)),
            "total_chunks": len(chunks),
            "average_chunk_tokens": round(sum(c.token_count for c in chunks) / len(chunks)) if chunks else 0,
        }


# =============================================================================
# PGVECTOR
# =============================================================================

class PgVectorKnowledgeStore(KnowledgeStore):
    """
    PostgreSQL + pgvector store.

    Tables: rag_knowledge_base, rag_chunks, rag_query_history
    (see database/migrations/001_rag_pgvector.sql).
    """

    def __init__(self, database: Database):
        self.database = database

    def init(self) -> None:
        self.database.init()

    def shutdown(self) -> None:
        self.database.shutdown()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    @staticmethod
    def _row_to_source(row: Dict[str, Any]) -> KnowledgeSource:
        return KnowledgeSource(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            source_type=SourceType(row["source_type"]),
            source_id=row["source_id"],
            title=row["title"],
            content_hash=row["content_hash"],
            metadata=row.get("metadata") or {},
            status=row.get("status", "active"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    # -- sources ---------------------------------------------------------------

    def _find_source_sync(self, organization_id, source_type, source_id):
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT * FROM rag_knowledge_base
                    WHERE organization_id = %s AND source_type = %s AND source_id = %s
                """, (organization_id, SourceType(source_type).value, source_id))
                row = cur.fetchone()
        return self._row_to_source(row) if row else None

    async def find_source(self, organization_id, source_type, source_id):
        _require_org(organization_id)
        return await self._run(self._find_source_sync, organization_id, source_type, source_id)

    def _upsert_source_sync(self, source: KnowledgeSource):
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    INSERT INTO rag_knowledge_base (
                        organization_id, source_type, source_id,
                        title, content_hash, metadata, status
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (organization_id, source_type, source_id) DO UPDATE SET
                        title = EXCLUDED.title,
                        content_hash = EXCLUDED.content_hash,
                        metadata = EXCLUDED.metadata,
                        status = EXCLUDED.status,
                        updated_at = NOW()
                    RETURNING *
                """, (
                    source.organization_id,
                    source.source_type.value,
                    source.source_id,
                    source.title,
                    source.content_hash,
                    Json(source.metadata),
                    source.status,
                ))
                row = cur.fetchone()
        return self._row_to_source(row)

    async def upsert_source(self, source):
        _require_org(source.organization_id)
        return await self._run(self._upsert_source_sync, source)

    def _replace_chunks_sync(self, organization_id, knowledge_base_id, entries):
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM rag_chunks
                    WHERE organization_id = %s AND knowledge_base_id = %s
                """, (organization_id, knowledge_base_id))
                if entries:
                    execute_values(cur, """
                        INSERT INTO rag_chunks (
                            organization_id, knowledge_base_id, chunk_index,
                            content, token_count, embedding, metadata
                        ) VALUES %s
                    """, [
                        (
                            organization_id,
                            knowledge_base_id,
                            e.chunk_index,
                            e.content,
                            e.token_count,
                            e.embedding,
                            Json(e.metadata),
                        )
                        for e in entries
                    ], template="(%s, %s, %s, %s, %s, %s::vector, %s)")
        return len(entries)

    async def replace_chunks(self, organization_id, knowledge_base_id, entries):
        _require_org(organization_id)
        return await self._run(self._replace_chunks_sync, organization_id, knowledge_base_id, entries)

    # -- search ----------------------------------------------------------------

    def _similarity_search_sync(self, query: VectorQuery):
        conditions = [
            "c.organization_id = %(org)s",
            "kb.organization_id = %(org)s",
            "kb.status = 'active'",
            "1 - (c.embedding <=> %(embedding)s::vector) >= %(threshold)s",
        ]
        params: Dict[str, Any] = {
            "org": query.organization_id,
            "embedding": query.embedding,
            "threshold": query.similarity_threshold,
            "limit": query.limit,
        }
        if query.source_types:
            conditions.append("kb.source_type = ANY(%(source_types)s)")
            params["source_types"] = [s.value for s in query.source_types]
        if query.metadata_filters:
            conditions.append("kb.metadata @> %(metadata)s::jsonb")
            params["metadata"] = Json(query.metadata_filters)

        sql = f"""
            SELECT
                c.id, c.content, c.chunk_index, c.token_count,
                c.metadata AS chunk_metadata,
                kb.id AS knowledge_base_id, kb.source_type, kb.source_id,
                kb.title, kb.metadata AS source_metadata,
                1 - (c.embedding <=> %(embedding)s::vector) AS similarity
            FROM rag_chunks c
            JOIN rag_knowledge_base kb ON kb.id = c.knowledge_base_id
            WHERE {' AND '.join(conditions)}
            ORDER BY c.embedding <=> %(embedding)s::vector
            LIMIT %(limit)s
        """

        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()

        return [
            RetrievedChunk(
                id=str(row["id"]),
                content=row["content"],
                similarity=float(row["similarity"]),
                knowledge_base_id=str(row["knowledge_base_id"]),
                source_type=SourceType(row["source_type"]),
                source_id=row["source_id"],
                title=row["title"],
                chunk_index=row["chunk_index"],
                token_count=row["token_count"] or 0,
                metadata={**(row["source_metadata"] or {}), **(row["chunk_metadata"] or {})},
            )
            for row in rows
        ]

    async def similarity_search(self, query):
        return await self._run(self._similarity_search_sync, query)

    # -- maintenance -----------------------------------------------------------

    def _delete_source_sync(self, organization_id, knowledge_base_id):
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                # rag_chunks rows cascade
                cur.execute("""
                    DELETE FROM rag_knowledge_base
                    WHERE organization_id = %s AND id = %s
                """, (organization_id, knowledge_base_id))
                return cur.rowcount > 0

    async def delete_source(self, organization_id, knowledge_base_id):
        _require_org(organization_id)
        return await self._run(self._delete_source_sync, organization_id, knowledge_base_id)

    def _list_sources_sync(self, organization_id, source_type, updated_before):
        sql = "SELECT * FROM rag_knowledge_base WHERE organization_id = %s"
        params: List[Any] = [organization_id]
        if source_type is not None:
            sql += " AND source_type = %s"
            params.append(SourceType(source_type).value)
        if updated_before is not None:
            sql += " AND updated_at < %s"
            params.append(updated_before)
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [self._row_to_source(row) for row in rows]

    async def list_sources(self, organization_id, source_type=None, updated_before=None):
        _require_org(organization_id)
        return await self._run(self._list_sources_sync, organization_id, source_type, updated_before)

    def _count_chunks_sync(self, organization_id, knowledge_base_id):
        sql = "SELECT COUNT(*) FROM rag_chunks WHERE organization_id = %s"
        params: List[Any] = [organization_id]
        if knowledge_base_id is not None:
            sql += " AND knowledge_base_id = %s"
            params.append(knowledge_base_id)
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchone()[0]

    async def count_chunks(self, organization_id, knowledge_base_id=None):
        _require_org(organization_id)
        return await self._run(self._count_chunks_sync, organization_id, knowledge_base_id)

    def _log_query_sync(self, organization_id, query, result_count, processing_time_ms, metadata):
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO rag_query_history (
                        organization_id, query_text, results_count,
                        processing_time_ms, metadata
                    ) VALUES (%s, %s, %s, %s, %s)
                    RETURNING id
                """, (organization_id, query, result_count, processing_time_ms, Json(metadata or {})))
                return str(cur.fetchone()[0])

    async def log_query(self, organization_id, query, result_count, processing_time_ms, metadata=None):
        _require_org(organization_id)
        return await self._run(
            self._log_query_sync, organization_id, query, result_count, processing_time_ms, metadata
        )

    def _get_stats_sync(self, organization_id):
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT source_type, COUNT(*) AS count
                    FROM rag_knowledge_base
                    WHERE organization_id = %s
                    GROUP BY source_type
                """, (organization_id,))
                by_type = {row["source_type"]: int(row["count"]) for row in cur.fetchall()}

                cur.execute("""
                    SELECT COUNT(*) AS count, COALESCE(AVG(token_count), 0) AS avg_tokens
                    FROM rag_chunks
                    WHERE organization_id = %s
                """, (organization_id,))
                chunk_row = cur.fetchone()

        return {
            "total_sources": sum(by_type.values()),
            "sources_by_type": by_type,
            "total_chunks": int(chunk_row["count"]),
            "average_chunk_tokens": round(float(chunk_row["avg_tokens"])),
        }

    async def get_stats(self, organization_id):
        _require_org(organization_id)
        return await self._run(self._get_stats_sync, organization_id)
