"""
Memory Store
============

Persistence for AI memories (facts and interactions remembered per
tenant) and their access log.

Backends:
- PgMemoryStore: ai_memories / ai_memory_access tables with pgvector
- InMemoryMemoryStore: pure Python, for dev and tests
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from psycopg2.extras import Json, RealDictCursor

from ..data.database import Database
from .models import MemoryItem
from .store import TenantScopeError, cosine_similarity

logger = logging.getLogger(__name__)


class MemoryStore(ABC):
    """Abstract async memory store."""

    @abstractmethod
    async def search_memories(
        self,
        organization_id: str,
        query_embedding: List[float],
        similarity_threshold: float = 0.7,
        min_importance: float = 0.3,
        limit: int = 50,
        created_after: Optional[datetime] = None,
    ) -> List[MemoryItem]:
        """Memories above both thresholds, most similar first."""
        pass

    @abstractmethod
    async def record_access(
        self,
        memory_id: str,
        organization_id: str,
        access_type: str,
        user_id: Optional[str] = None,
        context: Optional[str] = None,
    ) -> None:
        pass


class InMemoryMemoryStore(MemoryStore):
    """List-backed memory store with brute-force cosine similarity."""

    def __init__(self):
        self._memories: List[Tuple[MemoryItem, List[float]]] = []
        self.accesses: List[Dict[str, Any]] = []

    def add_memory(self, item: MemoryItem, embedding: List[float]) -> MemoryItem:
        if not item.organization_id:
            raise TenantScopeError("memory items must belong to an organization")
        self._memories.append((item, list(embedding)))
        return item

    async def search_memories(
        self,
        organization_id,
        query_embedding,
        similarity_threshold=0.7,
        min_importance=0.3,
        limit=50,
        created_after=None,
    ):
        if not organization_id:
            raise TenantScopeError("organization_id is required")

        scored = []
        for item, embedding in self._memories:
            if item.organization_id != organization_id:
                continue
            if item.importance_score < min_importance:
                continue
            if created_after is not None and (item.created_at is None or item.created_at < created_after):
                continue
            similarity = cosine_similarity(query_embedding, embedding)
            if similarity < similarity_threshold:
                continue
            scored.append(replace(item, similarity=similarity, metadata=dict(item.metadata)))

        scored.sort(key=lambda m: m.similarity, reverse=True)
        return scored[:limit]

    async def record_access(self, memory_id, organization_id, access_type, user_id=None, context=None):
        self.accesses.append({
            "memory_id": memory_id,
            "organization_id": organization_id,
            "access_type": access_type,
            "user_id": user_id,
            "context": context,
            "accessed_at": datetime.now(timezone.utc),
        })


class PgMemoryStore(MemoryStore):
    """
    PostgreSQL + pgvector memory store.

    Tables: ai_memories, ai_memory_access
    (see database/migrations/001_rag_pgvector.sql).
    """

    def __init__(self, database: Database):
        self.database = database

    def _search_sync(self, organization_id, query_embedding, similarity_threshold, min_importance, limit, created_after):
        sql = """
            SELECT
                id, organization_id, user_id, memory_type, content,
                importance_score, metadata, created_at,
                1 - (embedding <=> %(embedding)s::vector) AS similarity
            FROM ai_memories
            WHERE organization_id = %(org)s
              AND importance_score >= %(min_importance)s
              AND 1 - (embedding <=> %(embedding)s::vector) >= %(threshold)s
        """
        params: Dict[str, Any] = {
            "org": organization_id,
            "embedding": query_embedding,
            "min_importance": min_importance,
            "threshold": similarity_threshold,
            "limit": limit,
        }
        if created_after is not None:
            sql += " AND created_at >= %(created_after)s"
            params["created_after"] = created_after
        sql += " ORDER BY embedding <=> %(embedding)s::vector LIMIT %(limit)s"

        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()

        return [
            MemoryItem(
                id=str(row["id"]),
                content=row["content"],
                memory_type=row["memory_type"],
                importance_score=float(row["importance_score"]),
                created_at=row["created_at"],
                metadata=row["metadata"] or {},
                user_id=str(row["user_id"]) if row["user_id"] else None,
                organization_id=str(row["organization_id"]),
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    async def search_memories(
        self,
        organization_id,
        query_embedding,
        similarity_threshold=0.7,
        min_importance=0.3,
        limit=50,
        created_after=None,
    ):
        if not organization_id:
            raise TenantScopeError("organization_id is required")
        return await asyncio.to_thread(
            self._search_sync,
            organization_id, query_embedding, similarity_threshold, min_importance, limit, created_after,
        )

    def _record_access_sync(self, memory_id, organization_id, access_type, user_id, context):
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO ai_memory_access (
                        id, memory_id, organization_id, user_id, access_type, context
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                """, (str(uuid.uuid4()), memory_id, organization_id, user_id, access_type, Json({"query": context})))
                cur.execute("""
                    UPDATE ai_memories
                    SET access_count = access_count + 1, last_accessed_at = NOW()
                    WHERE id = %s AND organization_id = %s
                """, (memory_id, organization_id))

    async def record_access(self, memory_id, organization_id, access_type, user_id=None, context=None):
        await asyncio.to_thread(self._record_access_sync, memory_id, organization_id, access_type, user_id, context)
