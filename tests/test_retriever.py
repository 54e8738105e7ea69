"""
Tests for the tenant-scoped retriever.
"""

import pytest

from aris.rag.chunker import estimate_tokens
from aris.rag.models import ContentItem, RetrievalOptions, RetrievedChunk, SourceType
from aris.rag.retriever import RAGRetriever
from aris.rag.store import InMemoryKnowledgeStore

from conftest import FakeEmbedder

ORG = "org-1"


class BrokenSearchStore(InMemoryKnowledgeStore):
    async def similarity_search(self, query):
        raise RuntimeError("database unavailable")


class BrokenLogStore(InMemoryKnowledgeStore):
    async def log_query(self, *args, **kwargs):
        raise RuntimeError("history table locked")


async def seed(ingestion):
    items = [
        ContentItem(title="Roof Box", content="roof box black 400 litre", source_type=SourceType.PRODUCT,
                    source_id="p1", metadata={"category": "roof boxes"}),
        ContentItem(title="Bike Rack", content="bike rack for tow bar", source_type=SourceType.PRODUCT,
                    source_id="p2", metadata={"category": "racks"}),
        ContentItem(title="Manual", content="roof box mounting manual", source_type=SourceType.DOCUMENT,
                    source_id="d1"),
    ]
    for item in items:
        await ingestion.ingest_content(ORG, item)


def chunk(title, content, similarity=0.9):
    return RetrievedChunk(
        id=title, content=content, similarity=similarity, knowledge_base_id="kb",
        source_type=SourceType.PRODUCT, source_id=title, title=title,
    )


class TestRetrieve:
    """Tests for RAGRetriever.retrieve."""

    @pytest.mark.asyncio
    async def test_results_ordered_and_thresholded(self, ingestion, retriever, store):
        await seed(ingestion)

        result = await retriever.retrieve("roof box", ORG, RetrievalOptions(similarity_threshold=0.5))

        assert result.chunks
        similarities = [c.similarity for c in result.chunks]
        assert similarities == sorted(similarities, reverse=True)
        assert all(s >= 0.5 for s in similarities)
        assert "p2" not in [c.source_id for c in result.chunks]
        assert result.total_found == len(result.chunks)
        assert result.query_id == store.query_log[-1]["id"]

    @pytest.mark.asyncio
    async def test_source_type_and_metadata_filters(self, ingestion, retriever):
        await seed(ingestion)

        result = await retriever.retrieve("roof box", ORG, RetrievalOptions(
            source_types=[SourceType.DOCUMENT], similarity_threshold=0.1,
        ))
        assert [c.source_id for c in result.chunks] == ["d1"]

        result = await retriever.retrieve("roof box", ORG, RetrievalOptions(
            metadata_filters={"category": "racks"}, similarity_threshold=0.0,
        ))
        assert [c.source_id for c in result.chunks] == ["p2"]

    @pytest.mark.asyncio
    async def test_limit_applied(self, ingestion, retriever):
        await seed(ingestion)
        result = await retriever.retrieve("roof box", ORG, RetrievalOptions(limit=1, similarity_threshold=0.0))
        assert len(result.chunks) == 1

    @pytest.mark.asyncio
    async def test_other_tenant_sees_nothing(self, ingestion, retriever):
        await seed(ingestion)
        result = await retriever.retrieve("roof box", "org-2", RetrievalOptions(similarity_threshold=0.0))
        assert result.chunks == []

    @pytest.mark.asyncio
    async def test_missing_org_degrades_to_empty(self, ingestion, retriever, error_log):
        await seed(ingestion)
        result = await retriever.retrieve("roof box", "", RetrievalOptions(similarity_threshold=0.0))

        assert result.chunks == []
        assert result.query_id is None
        assert error_log.count("retriever") == 1

    @pytest.mark.asyncio
    async def test_store_failure_degrades_to_empty(self, error_log):
        retriever = RAGRetriever(BrokenSearchStore(), FakeEmbedder(), error_log=error_log)
        result = await retriever.retrieve("roof box", ORG)

        assert result.chunks == []
        assert result.total_found == 0
        assert error_log.count("retriever") == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_to_empty(self, store, error_log):
        retriever = RAGRetriever(store, FakeEmbedder(fail=True), error_log=error_log)
        result = await retriever.retrieve("roof box", ORG)
        assert result.chunks == []
        assert error_log.count("retriever") == 1

    @pytest.mark.asyncio
    async def test_query_log_failure_keeps_results(self, embedder, error_log):
        from aris.rag.ingestion import RAGIngestion

        store = BrokenLogStore()
        await seed(RAGIngestion(store, embedder, record_delay=0))
        retriever = RAGRetriever(store, embedder, error_log=error_log)

        result = await retriever.retrieve("roof box", ORG, RetrievalOptions(similarity_threshold=0.5))

        assert result.chunks
        assert result.query_id is None
        assert error_log.count("retriever.query_log") == 1


class TestDetermineRelevantSources:
    """Tests for keyword source routing."""

    def test_product_keywords(self):
        assert RAGRetriever.determine_relevant_sources("What is the price?") == [
            SourceType.PRODUCT, SourceType.METAKOCKA,
        ]

    def test_combined_keywords_deduplicated(self):
        sources = RAGRetriever.determine_relevant_sources("customer asked for the product manual")
        assert sources == [SourceType.PRODUCT, SourceType.METAKOCKA, SourceType.DOCUMENT]

    def test_no_keywords_searches_everything(self):
        assert set(RAGRetriever.determine_relevant_sources("hello there")) == {
            SourceType.PRODUCT, SourceType.DOCUMENT, SourceType.METAKOCKA, SourceType.MAGENTO,
        }


class TestFormatContext:
    """Tests for prompt context rendering."""

    def test_numbered_sections(self):
        text = RAGRetriever.format_context([chunk("A", "alpha"), chunk("B", "beta")])
        assert text == "[1] A\nalpha\n\n---\n\n[2] B\nbeta"

    def test_stops_at_budget(self):
        first = chunk("A", "x" * 40)
        budget = estimate_tokens(f"[1] A\n{first.content}")
        text = RAGRetriever.format_context([first, chunk("B", "y" * 40)], max_tokens=budget)
        assert text.startswith("[1] A")
        assert "[2]" not in text

    def test_empty(self):
        assert RAGRetriever.format_context([]) == ""
