"""
Tests for grounded answer generation.
"""

import pytest

from aris.cache.redis_cache import RedisCache
from aris.rag.context import MemoryContextManager, StaticPlanLookup
from aris.rag.generation import (
    ERROR_ANSWER,
    NO_CONTEXT_ANSWER,
    RAGGenerator,
    calculate_confidence,
)
from aris.rag.memory_store import InMemoryMemoryStore
from aris.rag.models import ContentItem, MemoryItem, QueryContext, SourceType

from conftest import FakeLLM, hashed_embedding

ORG = "org-1"


async def seed(ingestion):
    await ingestion.ingest_content(ORG, ContentItem(
        title="Roof Box 400L", content="roof box price", source_type=SourceType.PRODUCT, source_id="p1",
    ))
    await ingestion.ingest_content(ORG, ContentItem(
        title="Mounting Guide", content="mounting guide for roof bars", source_type=SourceType.DOCUMENT,
        source_id="d1",
    ))


class TestCalculateConfidence:
    """Tests for the confidence blend."""

    def test_no_context(self):
        assert calculate_confidence([], "anything") == 0.1

    def test_blend(self):
        assert calculate_confidence([0.8], "x" * 50) == pytest.approx(0.8 * 0.7 + 0.5 * 0.3)

    def test_capped(self):
        assert calculate_confidence([1.0, 1.0], "x" * 500) == 0.95


class TestQueryWithGeneration:
    """Tests for RAGGenerator.query_with_generation."""

    @pytest.mark.asyncio
    async def test_grounded_answer(self, ingestion, retriever, llm):
        await seed(ingestion)
        generator = RAGGenerator(retriever, llm)

        response = await generator.query_with_generation("roof box price", ORG)

        assert response.answer == llm.content
        assert response.confidence == 0.95
        assert response.tokens_used == 120
        assert [s.source_id for s in response.sources] == ["p1"]
        assert response.sources[0].source_type is SourceType.PRODUCT
        assert "[1] Roof Box 400L\nroof box price" in response.context_used

        assert len(llm.calls) == 1
        call = llm.calls[0]
        assert call["prompt"] == "roof box price"
        assert "[1] Roof Box 400L" in call["system"]
        assert call["max_tokens"] == 500
        assert call["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_no_context_skips_llm(self, retriever, llm):
        response = await RAGGenerator(retriever, llm).query_with_generation("roof box price", ORG)

        assert response.answer == NO_CONTEXT_ANSWER
        assert response.confidence == 0.1
        assert response.sources == []
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_explicit_source_types(self, ingestion, retriever, llm):
        await seed(ingestion)
        response = await RAGGenerator(retriever, llm).query_with_generation(
            "roof box price", ORG, QueryContext(source_types=[SourceType.DOCUMENT]),
        )
        assert response.answer == NO_CONTEXT_ANSWER

    @pytest.mark.asyncio
    async def test_llm_failure(self, ingestion, retriever):
        await seed(ingestion)
        llm = FakeLLM(error=RuntimeError("rate limited"))

        response = await RAGGenerator(retriever, llm).query_with_generation("roof box price", ORG)

        assert response.answer == ERROR_ANSWER
        assert response.confidence == 0.0

    @pytest.mark.asyncio
    async def test_empty_completion(self, ingestion, retriever):
        await seed(ingestion)
        response = await RAGGenerator(retriever, FakeLLM(content="")).query_with_generation("roof box price", ORG)
        assert response.answer == "No response generated"

    @pytest.mark.asyncio
    async def test_preamble_precedes_context(self, ingestion, retriever, llm):
        await seed(ingestion)
        response = await RAGGenerator(retriever, llm).query_with_generation(
            "roof box price", ORG, preamble="Customer: Ana",
        )
        assert response.context_used.startswith("Customer: Ana\n\n[1] Roof Box 400L")

    @pytest.mark.asyncio
    async def test_memory_mode(self, retriever, embedder, llm):
        memories = InMemoryMemoryStore()
        item = MemoryItem(
            id="m1", content="customer prefers black roof boxes", memory_type="preference",
            importance_score=0.8, created_at=None, organization_id=ORG,
        )
        memories.add_memory(item, hashed_embedding(item.content))
        manager = MemoryContextManager(memories, embedder, StaticPlanLookup(), cache=RedisCache(None))

        response = await RAGGenerator(retriever, llm, manager).query_with_generation(
            "customer prefers black roof boxes", ORG, QueryContext(use_memory=True),
        )
        await manager.flush()

        assert response.answer == llm.content
        assert response.sources == []
        assert "(preference) customer prefers black roof boxes" in llm.calls[0]["system"]
