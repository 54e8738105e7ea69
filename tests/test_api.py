"""
Tests for the service graph and the RAG REST API.

The API runs over the in-memory service graph with fake embeddings and
a canned LLM.
"""

import pytest
from fastapi.testclient import TestClient

from aris.api.main import create_app
from aris.data.config import MagentoConfig, RAGConfig, Settings
from aris.rag.services import RAGServices
from aris.rag.store import InMemoryKnowledgeStore

from conftest import FakeEmbedder, FakeLLM, FakeTenantStore

ORG = "org-1"
HEADERS = {"X-Organization-Id": ORG}


def make_settings():
    return Settings(
        rag=RAGConfig(store_backend="memory", record_delay_ms=0),
        magento=MagentoConfig(base_url=None, access_token=None),
    )


@pytest.fixture
def tenant_data():
    tenant_store = FakeTenantStore()
    tenant_store.products[ORG] = [
        {"id": "p1", "name": "Roof Box 400L", "sku": "RB-400", "category": "roof boxes",
         "description": "roof box black"},
    ]
    tenant_store.documents[ORG] = [
        {"id": "d1", "file_name": "manual.pdf", "document_type": "manual", "file_type": "pdf",
         "extracted_data": {"text_content": "roof box mounting manual"}},
    ]
    return tenant_store


@pytest.fixture
def services(tenant_data):
    return RAGServices.in_memory(FakeEmbedder(), FakeLLM(), tenant_store=tenant_data, settings=make_settings())


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def ingest(client, source_id="p9", content="roof box price", org=ORG, **extra):
    body = {
        "title": f"Item {source_id}",
        "content": content,
        "source_type": "product",
        "source_id": source_id,
        **extra,
    }
    return client.post("/api/rag/ingest", json=body, headers={"X-Organization-Id": org})


class TestRAGServices:
    """Tests for the in-memory composition root."""

    def test_in_memory_graph(self, services):
        assert isinstance(services.store, InMemoryKnowledgeStore)
        assert services.retriever.store is services.store
        assert services.generator.context_manager is services.context_manager
        assert services.product_adapter is not None
        assert services.document_adapter is not None
        assert services.ingestion.record_delay == 0
        assert services.cache.backend == "memory"

    def test_tenant_adapters_need_tenant_store(self):
        services = RAGServices.in_memory(FakeEmbedder(), FakeLLM(), settings=make_settings())
        assert services.product_adapter is None
        assert services.document_adapter is None
        assert services.metakocka_adapter.client is None

    @pytest.mark.asyncio
    async def test_shutdown(self, services):
        services.init()
        await services.shutdown()
        assert services.cache.backend == "memory"


class TestHealthAndHeaders:
    """Tests for health and tenant header handling."""

    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["store_backend"] == "memory"
        assert data["database"] == "not_used"
        assert data["cache"] == "memory"

    def test_missing_org_header(self, client):
        assert client.get("/api/rag/stats").status_code == 422

    def test_blank_org_header(self, client):
        assert client.get("/api/rag/stats", headers={"X-Organization-Id": "  "}).status_code == 400

    def test_services_not_initialized(self):
        response = TestClient(create_app()).get("/api/rag/stats", headers=HEADERS)
        assert response.status_code == 503


class TestIngestAndSearch:
    """Tests for ingest and search endpoints."""

    def test_ingest_then_search(self, client):
        response = ingest(client, metadata={"category": "roof boxes"})
        assert response.status_code == 200
        assert response.json()["chunks_created"] == 1
        assert response.json()["skipped"] is False

        search = client.post("/api/rag/search", json={"query": "roof box price"}, headers=HEADERS).json()

        assert search["total_found"] == 1
        result = search["results"][0]
        assert result["source_id"] == "p9"
        assert result["source_type"] == "product"
        assert result["metadata"]["category"] == "roof boxes"
        assert search["formatted_context"].startswith("[1] Item p9")

    def test_search_is_tenant_scoped(self, client):
        ingest(client)
        search = client.post(
            "/api/rag/search", json={"query": "roof box price"}, headers={"X-Organization-Id": "org-2"},
        ).json()
        assert search["results"] == []

    def test_skip_if_exists(self, client):
        ingest(client)
        response = ingest(client, skip_if_exists=True)
        assert response.json()["skipped"] is True

    def test_invalid_metadata_rejected(self, client):
        assert ingest(client, metadata={"price": -1}).status_code == 400

    def test_invalid_filters_rejected(self, client):
        response = client.post(
            "/api/rag/search", json={"query": "x", "metadata_filters": {"language": "german"}}, headers=HEADERS,
        )
        assert response.status_code == 400

    def test_ingest_failure_is_500(self, client):
        assert ingest(client, content="   ").status_code == 500


class TestSync:
    """Tests for the sync endpoint."""

    def test_rejects_unknown_sources(self, client):
        assert client.post("/api/rag/sync", json={"source_types": []}, headers=HEADERS).status_code == 400
        response = client.post("/api/rag/sync", json={"source_types": ["crm"]}, headers=HEADERS)
        assert response.status_code == 400
        assert "crm" in response.json()["detail"]

    def test_sources_sync_independently(self, client, tenant_data):
        response = client.post(
            "/api/rag/sync",
            json={"source_types": ["product", "document", "metakocka", "magento"],
                  "options": {"languages": ["de"]}},
            headers=HEADERS,
        )
        assert response.status_code == 200
        data = response.json()
        results = data["sync_results"]

        assert results["product"]["successful"] == 1
        assert results["document"]["successful"] == 1
        assert results["metakocka"]["errors"] == ["Sync failed: no Metakocka client configured"]
        assert results["magento"]["failed"] == 1
        assert results["magento"]["errors"][0].startswith("de:")
        assert "processing_time_ms" in results["product"]
        assert data["totals"]["successful"] == 2
        assert tenant_data.status_updates[-1]["status"] == "rag_indexed"


class TestGenerationEndpoints:
    """Tests for query, context, stats and status."""

    def test_query(self, client):
        ingest(client)
        data = client.post("/api/rag/query", json={"query": "roof box price"}, headers=HEADERS).json()

        assert data["answer"].startswith("Grounded answer")
        assert data["sources"][0]["source_id"] == "p9"
        assert data["confidence"] > 0.1

    def test_query_without_context(self, client):
        data = client.post("/api/rag/query", json={"query": "roof box price"}, headers=HEADERS).json()
        assert data["confidence"] == 0.1
        assert data["sources"] == []

    def test_context(self, client):
        data = client.post("/api/rag/context", json={"query": "anything", "user_id": "u1"}, headers=HEADERS).json()

        assert data["memories"] == []
        assert data["formatted"] == ""
        assert data["prioritization_strategy"] == "recency-importance-compression"
        assert data["metadata"]["subscription_tier"] == "free"

    def test_stats_and_status(self, client):
        ingest(client)

        stats = client.get("/api/rag/stats", headers=HEADERS).json()
        assert stats["total_sources"] == 1
        assert stats["session"]["items_ingested"] == 1

        status = client.get("/api/rag/status", headers=HEADERS).json()
        assert status["store_backend"] == "memory"
        assert status["erp_configured"] is False
        assert status["magento_configured"] is False
        assert status["cache"]["backend"] == "memory"
        assert status["metakocka"]["total_items"] == 0
        assert status["documents"]["total_documents"] == 1
        assert "database" not in status
