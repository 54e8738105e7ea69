"""
Tests for the ingestion pipeline and the in-memory knowledge store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aris.rag.ingestion import RAGIngestion, content_hash
from aris.rag.models import ContentItem, IngestOptions, SourceType
from aris.rag.store import (
    InMemoryKnowledgeStore,
    TenantScopeError,
    VectorQuery,
    cosine_similarity,
)

from conftest import FakeEmbedder, hashed_embedding

ORG = "org-1"
OTHER_ORG = "org-2"


def product_item(source_id="p1", content="Roof box with 400 litre capacity.", **kwargs):
    return ContentItem(
        title="Roof Box 400L",
        content=content,
        source_type=SourceType.PRODUCT,
        source_id=source_id,
        metadata={"category": "roof boxes", "sku": "RB-400"},
        **kwargs,
    )


def long_content(sentences=80):
    return " ".join(f"Paragraph {i} describes the mounting kit and load limits." for i in range(sentences))


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now


class TestIngestContent:
    """Tests for single item ingestion."""

    @pytest.mark.asyncio
    async def test_creates_source_and_chunks(self, ingestion, store):
        result = await ingestion.ingest_content(ORG, product_item())

        assert result.success
        assert not result.skipped
        assert result.knowledge_base_id is not None
        assert result.chunks_created == 1
        assert result.tokens_processed > 0

        source = await store.find_source(ORG, SourceType.PRODUCT, "p1")
        assert source.id == result.knowledge_base_id
        assert source.content_hash == content_hash(product_item())
        assert await store.count_chunks(ORG, source.id) == 1

    @pytest.mark.asyncio
    async def test_reingest_replaces_chunks(self, ingestion, store):
        first = await ingestion.ingest_content(ORG, product_item(content=long_content()))
        assert first.chunks_created > 1

        second = await ingestion.ingest_content(ORG, product_item(content="Short replacement text."))

        assert second.knowledge_base_id == first.knowledge_base_id
        assert await store.count_chunks(ORG, first.knowledge_base_id) == 1
        assert len(await store.list_sources(ORG)) == 1

    @pytest.mark.asyncio
    async def test_skip_if_exists_does_not_embed(self, ingestion, embedder):
        first = await ingestion.ingest_content(ORG, product_item())
        batches_before = len(embedder.batches)

        result = await ingestion.ingest_content(ORG, product_item(), IngestOptions(skip_if_exists=True))

        assert result.success
        assert result.skipped
        assert result.knowledge_base_id == first.knowledge_base_id
        assert result.chunks_created == 0
        assert len(embedder.batches) == batches_before
        assert ingestion.stats["items_skipped"] == 1

    @pytest.mark.asyncio
    async def test_force_update_overrides_skip(self, ingestion, embedder):
        await ingestion.ingest_content(ORG, product_item())
        batches_before = len(embedder.batches)

        result = await ingestion.ingest_content(
            ORG, product_item(force_update=True), IngestOptions(skip_if_exists=True)
        )

        assert result.success
        assert not result.skipped
        assert len(embedder.batches) == batches_before + 1

    @pytest.mark.asyncio
    async def test_custom_metadata_merged(self, ingestion, store):
        await ingestion.ingest_content(
            ORG, product_item(), IngestOptions(custom_metadata={"sync_source": "manual"})
        )
        source = await store.find_source(ORG, SourceType.PRODUCT, "p1")

        assert source.metadata["sync_source"] == "manual"
        assert source.metadata["sku"] == "RB-400"

    @pytest.mark.asyncio
    async def test_embedding_failure_reported(self, store):
        ingestion = RAGIngestion(store, FakeEmbedder(fail=True), record_delay=0)
        result = await ingestion.ingest_content(ORG, product_item())

        assert not result.success
        assert result.knowledge_base_id is None
        assert "embedding service unavailable" in result.error
        assert await store.find_source(ORG, SourceType.PRODUCT, "p1") is None

    @pytest.mark.asyncio
    async def test_blank_content_reported(self, ingestion):
        result = await ingestion.ingest_content(ORG, product_item(content="   "))

        assert not result.success
        assert result.error

    @pytest.mark.asyncio
    async def test_same_source_id_isolated_per_tenant(self, ingestion, store):
        first = await ingestion.ingest_content(ORG, product_item())
        second = await ingestion.ingest_content(OTHER_ORG, product_item())

        assert first.knowledge_base_id != second.knowledge_base_id
        assert len(await store.list_sources(ORG)) == 1
        assert len(await store.list_sources(OTHER_ORG)) == 1


class TestChunkingConfigSelection:
    """Tests for per-item chunking configuration."""

    def test_products_use_product_defaults(self, ingestion):
        config = ingestion._chunking_config(product_item(), IngestOptions())
        assert config.chunk_size == 500
        assert config.chunk_overlap == 100

    def test_options_override(self, ingestion):
        config = ingestion._chunking_config(product_item(), IngestOptions(chunk_size=600))
        assert config.chunk_size == 600
        assert config.chunk_overlap == 100

    def test_documents_use_chunker_config(self, ingestion):
        item = ContentItem(title="Manual", content="text", source_type=SourceType.DOCUMENT, source_id="d1")
        assert ingestion._chunking_config(item, IngestOptions()) == ingestion.chunker.config


class TestIngestBatch:
    """Tests for batch ingestion."""

    @pytest.mark.asyncio
    async def test_counts_outcomes(self, ingestion):
        await ingestion.ingest_content(ORG, product_item("p1"))
        items = [product_item("p1"), product_item("p2"), product_item("p3", content="")]

        result = await ingestion.ingest_batch(ORG, items, IngestOptions(skip_if_exists=True))

        assert result.processed == 3
        assert result.successful == 2
        assert result.skipped == 1
        assert result.failed == 1
        assert result.errors[0].startswith("p3:")


class TestMaintenance:
    """Tests for deletion, cleanup and stats."""

    @pytest.mark.asyncio
    async def test_delete_scoped_to_tenant(self, ingestion, store):
        result = await ingestion.ingest_content(ORG, product_item())

        assert await ingestion.delete_knowledge_base(result.knowledge_base_id, OTHER_ORG) is False
        assert await store.count_chunks(ORG) == 1

        assert await ingestion.delete_knowledge_base(result.knowledge_base_id, ORG) is True
        assert await store.count_chunks(ORG) == 0
        assert await store.find_source(ORG, SourceType.PRODUCT, "p1") is None

    @pytest.mark.asyncio
    async def test_cleanup_stale_removes_old_sources(self, embedder):
        clock = FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        store = InMemoryKnowledgeStore(clock=clock)
        ingestion = RAGIngestion(store, embedder, record_delay=0, clock=clock)

        await ingestion.ingest_content(ORG, product_item("old"))
        clock.now += timedelta(days=40)
        await ingestion.ingest_content(ORG, product_item("fresh"))
        await ingestion.ingest_content(OTHER_ORG, product_item("old"))

        removed = await ingestion.cleanup_stale(ORG, SourceType.PRODUCT, older_than_days=30)

        assert removed == 1
        remaining = [s.source_id for s in await store.list_sources(ORG)]
        assert remaining == ["fresh"]
        assert len(await store.list_sources(OTHER_ORG)) == 1

    @pytest.mark.asyncio
    async def test_system_stats(self, ingestion):
        await ingestion.ingest_content(ORG, product_item("p1"))
        await ingestion.ingest_content(ORG, product_item("p2"))

        stats = await ingestion.get_system_stats(ORG)

        assert stats["total_sources"] == 2
        assert stats["sources_by_type"] == {"product": 2}
        assert stats["total_chunks"] == 2
        assert stats["session"]["items_ingested"] == 2
        assert stats["session"]["embedding_tokens"] > 0


class TestInMemoryKnowledgeStore:
    """Tests for tenant scoping and similarity search."""

    def test_vector_query_requires_org(self):
        with pytest.raises(TenantScopeError):
            VectorQuery(organization_id="", embedding=[1.0])
        with pytest.raises(TenantScopeError):
            VectorQuery(organization_id="  ", embedding=[1.0])

    def test_vector_query_requires_positive_limit(self):
        with pytest.raises(ValueError):
            VectorQuery(organization_id=ORG, embedding=[1.0], limit=0)

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    @pytest.mark.asyncio
    async def test_search_never_crosses_tenants(self, ingestion, store):
        await ingestion.ingest_content(ORG, product_item())
        await ingestion.ingest_content(OTHER_ORG, product_item())

        results = await store.similarity_search(VectorQuery(
            organization_id=ORG,
            embedding=hashed_embedding("Roof box with 400 litre capacity."),
        ))

        assert len(results) == 1
        assert results[0].similarity == pytest.approx(1.0)
        source = await store.find_source(ORG, SourceType.PRODUCT, "p1")
        assert results[0].knowledge_base_id == source.id

    @pytest.mark.asyncio
    async def test_search_filters_and_orders(self, ingestion, store):
        await ingestion.ingest_content(ORG, product_item("p1", content="roof box black"))
        await ingestion.ingest_content(ORG, product_item("p2", content="roof box"))
        await ingestion.ingest_content(ORG, ContentItem(
            title="Doc", content="roof box", source_type=SourceType.DOCUMENT, source_id="d1",
        ))

        results = await store.similarity_search(VectorQuery(
            organization_id=ORG,
            embedding=hashed_embedding("roof box"),
            source_types=(SourceType.PRODUCT,),
            metadata_filters={"sku": "RB-400"},
        ))

        assert [r.source_id for r in results] == ["p2", "p1"]
        assert results[0].metadata["category"] == "roof boxes"

    @pytest.mark.asyncio
    async def test_unscoped_operations_rejected(self, store):
        with pytest.raises(TenantScopeError):
            await store.list_sources("")
        with pytest.raises(TenantScopeError):
            await store.get_stats(None)
