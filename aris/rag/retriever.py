"""
RAG Retriever
=============

Tenant-scoped retrieval:
1. Build a VectorQuery (organization id is mandatory)
2. Vector similarity search with source type / metadata filters
3. Threshold cutoff, similarity ordering, limit

Never raises to the caller: any failure degrades to an empty result.
"""

import logging
import time
from typing import List, Optional

from ..logging_config import SuppressedErrorLog
from .chunker import estimate_tokens
from .embedder import RAGEmbedder
from .models import RetrievalOptions, RetrievalResult, RetrievedChunk, SourceType
from .store import KnowledgeStore, VectorQuery

logger = logging.getLogger(__name__)


# Query keyword -> source types worth searching
SOURCE_KEYWORDS = [
    (("product", "item", "buy", "price", "specification", "feature"), (SourceType.PRODUCT, SourceType.METAKOCKA)),
    (("document", "file", "manual", "guide"), (SourceType.DOCUMENT,)),
    (("contact", "customer", "client", "person", "order"), (SourceType.METAKOCKA,)),
]


class RAGRetriever:
    """
    Retrieves relevant chunks from a tenant's knowledge base.

    Query analytics are logged as bookkeeping; a failed log write never
    affects the returned result.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: RAGEmbedder,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.error_log = error_log or SuppressedErrorLog()

    async def retrieve(
        self,
        query: str,
        organization_id: str,
        options: Optional[RetrievalOptions] = None,
    ) -> RetrievalResult:
        """
        Search for relevant chunks.

        Args:
            query: Search query text
            organization_id: Tenant scope (required)
            options: Source types, limit, threshold, metadata filters

        Returns:
            RetrievalResult ordered by similarity; empty on any failure
        """
        options = options or RetrievalOptions()
        start = time.time()

        try:
            embedding = await self.embedder.embed_query(query)
            vector_query = VectorQuery(
                organization_id=organization_id,
                embedding=embedding,
                source_types=tuple(options.source_types) if options.source_types else None,
                metadata_filters=dict(options.metadata_filters),
                limit=options.limit,
                similarity_threshold=options.similarity_threshold,
            )
            candidates = await self.store.similarity_search(vector_query)
        except Exception as e:
            self.error_log.record("retriever", e, organization_id=organization_id)
            logger.error(f"[Retriever] Retrieval failed: {e}")
            return RetrievalResult(processing_time_ms=int((time.time() - start) * 1000))

        chunks = [c for c in candidates if c.similarity >= options.similarity_threshold]
        chunks.sort(key=lambda c: c.similarity, reverse=True)
        chunks = chunks[:options.limit]

        elapsed_ms = int((time.time() - start) * 1000)
        query_id = await self._log_query(organization_id, query, chunks, options, elapsed_ms)

        logger.info(
            f"[Retriever] {len(chunks)} results in {elapsed_ms}ms for query: {query[:50]}...",
            extra={"organization_id": organization_id, "duration_ms": elapsed_ms},
        )
        return RetrievalResult(
            chunks=chunks,
            total_found=len(chunks),
            processing_time_ms=elapsed_ms,
            query_id=query_id,
        )

    async def _log_query(
        self,
        organization_id: str,
        query: str,
        chunks: List[RetrievedChunk],
        options: RetrievalOptions,
        elapsed_ms: int,
    ) -> Optional[str]:
        try:
            return await self.store.log_query(
                organization_id,
                query,
                len(chunks),
                elapsed_ms,
                {
                    "source_types": [s.value for s in options.source_types or []],
                    "similarity_threshold": options.similarity_threshold,
                    "top_similarity": chunks[0].similarity if chunks else None,
                },
            )
        except Exception as e:
            self.error_log.record("retriever.query_log", e, organization_id=organization_id)
            return None

    @staticmethod
    def determine_relevant_sources(query: str) -> List[SourceType]:
        """Pick source types from query keywords; all sources when nothing matches."""
        lowered = query.lower()
        sources: List[SourceType] = []
        for keywords, types in SOURCE_KEYWORDS:
            if any(k in lowered for k in keywords):
                sources.extend(t for t in types if t not in sources)
        if not sources:
            sources = [SourceType.PRODUCT, SourceType.DOCUMENT, SourceType.METAKOCKA, SourceType.MAGENTO]
        return sources

    @staticmethod
    def format_context(chunks: List[RetrievedChunk], max_tokens: int = 3000) -> str:
        """
        Render chunks as numbered, titled sections for an LLM prompt.

        Stops before the section that would exceed `max_tokens`.
        """
        sections = []
        used = 0
        for i, chunk in enumerate(chunks, 1):
            section = f"[{i}] {chunk.title}\n{chunk.content}"
            cost = estimate_tokens(section)
            if used + cost > max_tokens:
                break
            sections.append(section)
            used += cost
        return "\n\n---\n\n".join(sections)
