"""
RAG Ingestion Pipeline
======================

Pipeline for ingesting content items into a tenant's knowledge base.

Flow:
1. Skip check (skip_if_exists without force_update)
2. Chunk into pieces
3. Generate embeddings
4. Upsert the parent knowledge source
5. Replace the source's chunks (one current set per source)
"""

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .chunker import ChunkingConfig, DocumentChunker
from .embedder import RAGEmbedder
from .models import (
    BatchResult,
    ContentItem,
    IngestOptions,
    IngestResult,
    KnowledgeBaseEntry,
    KnowledgeSource,
    SourceType,
)
from .store import KnowledgeStore

logger = logging.getLogger(__name__)


def content_hash(item: ContentItem) -> str:
    return hashlib.sha256(f"{item.title}\n{item.content}".encode("utf-8")).hexdigest()


class RAGIngestion:
    """
    Ingestion pipeline for the RAG knowledge base.

    Handles:
    - Knowledge source creation / update
    - Chunking (product defaults for product items)
    - Embedding generation
    - Chunk replacement so re-ingestion never duplicates entries
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedder: RAGEmbedder,
        chunker: Optional[DocumentChunker] = None,
        record_delay: float = 0.1,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or DocumentChunker()
        self.record_delay = record_delay
        self._clock = clock

        self._items_ingested = 0
        self._items_skipped = 0
        self._chunks_created = 0

    def _chunking_config(self, item: ContentItem, options: IngestOptions) -> ChunkingConfig:
        base = ChunkingConfig.for_products() if item.source_type == SourceType.PRODUCT else self.chunker.config
        return base.with_overrides(options.chunk_size, options.chunk_overlap)

    async def ingest_content(
        self,
        organization_id: str,
        item: ContentItem,
        options: Optional[IngestOptions] = None,
    ) -> IngestResult:
        """
        Ingest a single content item.

        Failures are reported in the result rather than raised.
        """
        options = options or IngestOptions()
        start = time.time()

        try:
            if options.skip_if_exists and not item.force_update:
                existing = await self.store.find_source(organization_id, item.source_type, item.source_id)
                if existing is not None:
                    self._items_skipped += 1
                    logger.debug(f"[Ingestion] Skipping existing {item.source_type.value}:{item.source_id}")
                    return IngestResult(
                        knowledge_base_id=existing.id,
                        chunks_created=0,
                        tokens_processed=0,
                        processing_time_ms=int((time.time() - start) * 1000),
                        success=True,
                        skipped=True,
                    )

            config = self._chunking_config(item, options)
            metadata = {**item.metadata, **options.custom_metadata}
            chunks = self.chunker.chunk_with_metadata(item.content, metadata, config)
            if not chunks:
                raise ValueError("Chunker produced no valid chunks")

            embeddings = await self.embedder.embed_batch([c.content for c in chunks])

            source = await self.store.upsert_source(KnowledgeSource(
                organization_id=organization_id,
                source_type=item.source_type,
                source_id=item.source_id,
                title=item.title,
                content_hash=content_hash(item),
                metadata=metadata,
            ))

            entries = [
                KnowledgeBaseEntry(
                    organization_id=organization_id,
                    knowledge_base_id=source.id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    embedding=emb.embedding,
                    metadata=chunk.metadata,
                )
                for chunk, emb in zip(chunks, embeddings)
            ]
            await self.store.replace_chunks(organization_id, source.id, entries)

            tokens = sum(c.token_count for c in chunks)
            self._items_ingested += 1
            self._chunks_created += len(entries)

            elapsed_ms = int((time.time() - start) * 1000)
            logger.info(
                f"[Ingestion] {item.source_type.value}:{item.source_id} -> "
                f"{len(entries)} chunks ({tokens} tokens, {elapsed_ms}ms)",
                extra={
                    "organization_id": organization_id,
                    "source_type": item.source_type.value,
                    "source_id": item.source_id,
                    "duration_ms": elapsed_ms,
                },
            )

            return IngestResult(
                knowledge_base_id=source.id,
                chunks_created=len(entries),
                tokens_processed=tokens,
                processing_time_ms=elapsed_ms,
                success=True,
            )

        except Exception as e:
            logger.error(
                f"[Ingestion] Failed to ingest {item.source_type.value}:{item.source_id}: {e}",
                extra={"organization_id": organization_id, "source_id": item.source_id},
            )
            return IngestResult(
                knowledge_base_id=None,
                chunks_created=0,
                tokens_processed=0,
                processing_time_ms=int((time.time() - start) * 1000),
                success=False,
                error=str(e),
            )

    async def ingest_batch(
        self,
        organization_id: str,
        items: List[ContentItem],
        options: Optional[IngestOptions] = None,
    ) -> BatchResult:
        """Ingest items one at a time with a fixed pause between them."""
        result = BatchResult()

        for i, item in enumerate(items):
            if i > 0 and self.record_delay > 0:
                await asyncio.sleep(self.record_delay)

            outcome = await self.ingest_content(organization_id, item, options)
            result.processed += 1
            if not outcome.success:
                result.failed += 1
                result.errors.append(f"{item.source_id}: {outcome.error}")
            elif outcome.skipped:
                result.skipped += 1
                result.successful += 1
            else:
                result.successful += 1

        return result

    async def delete_knowledge_base(self, knowledge_base_id: str, organization_id: str) -> bool:
        """Delete a knowledge source and its chunks."""
        deleted = await self.store.delete_source(organization_id, knowledge_base_id)
        if deleted:
            logger.info(f"[Ingestion] Deleted knowledge base {knowledge_base_id}")
        return deleted

    async def cleanup_stale(
        self,
        organization_id: str,
        source_type: Optional[SourceType] = None,
        older_than_days: int = 30,
    ) -> int:
        """Delete sources not updated within `older_than_days`. Returns the count removed."""
        threshold = self._clock() - timedelta(days=older_than_days)
        stale = await self.store.list_sources(organization_id, source_type, updated_before=threshold)

        removed = 0
        for source in stale:
            if await self.store.delete_source(organization_id, source.id):
                removed += 1

        if removed:
            logger.info(
                f"[Ingestion] Removed {removed} stale "
                f"{source_type.value if source_type else 'all'} sources older than {older_than_days} days"
            )
        return removed

    async def get_system_stats(self, organization_id: str) -> Dict[str, Any]:
        stats = await self.store.get_stats(organization_id)
        stats["session"] = self.stats
        return stats

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "items_ingested": self._items_ingested,
            "items_skipped": self._items_skipped,
            "chunks_created": self._chunks_created,
            "embedding_tokens": self.embedder.total_tokens,
            "embedding_cost_usd": self.embedder.estimated_cost,
        }
