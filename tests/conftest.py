"""
Shared fixtures for ARIS RAG tests.

Embeddings are a deterministic hashed bag of words, so texts sharing
words are similar and identical texts have similarity 1.0. No network.
"""

import hashlib
import math
import re
from typing import Any, Dict, List, Optional

import pytest

from aris.ai.llm_client import LLMClient, LLMProvider, LLMResponse
from aris.logging_config import SuppressedErrorLog
from aris.rag.embedder import EmbeddingResult
from aris.rag.ingestion import RAGIngestion
from aris.rag.retriever import RAGRetriever
from aris.rag.store import InMemoryKnowledgeStore

DIMENSIONS = 64


def hashed_embedding(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    vector = [0.0] * dimensions
    for word in re.findall(r"\w+", text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeEmbedder:
    """Stands in for RAGEmbedder."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.queries: List[str] = []
        self.batches: List[List[str]] = []
        self._total_tokens = 0

    async def embed(self, text: str) -> EmbeddingResult:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str], batch_size: int = 100) -> List[EmbeddingResult]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        self.batches.append(list(texts))
        results = []
        for text in texts:
            tokens = len(text.split())
            self._total_tokens += tokens
            results.append(EmbeddingResult(hashed_embedding(text), tokens, "fake-embedding"))
        return results

    async def embed_query(self, query: str) -> List[float]:
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        self.queries.append(query)
        return hashed_embedding(query)

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def estimated_cost(self) -> float:
        return self._total_tokens / 1_000_000 * 0.02


class FakeLLM(LLMClient):
    """Records prompts and returns a canned answer."""

    def __init__(self, content: str = "Grounded answer " * 10, error: Optional[Exception] = None):
        self.content = content
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, system=None, max_tokens=1024, temperature=0.7) -> LLMResponse:
        self.calls.append({
            "prompt": prompt,
            "system": system,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if self.error is not None:
            raise self.error
        return LLMResponse(
            content=self.content,
            model="fake-model",
            provider=LLMProvider.OPENAI,
            tokens_input=100,
            tokens_output=20,
            cost_usd=0.0,
        )


class FakeTenantStore:
    """Dictionary-backed stand-in for TenantStore."""

    def __init__(self):
        self.products: Dict[str, List[Dict[str, Any]]] = {}
        self.pricing: Dict[str, List[Dict[str, Any]]] = {}
        self.suppliers: Dict[str, Dict[str, Any]] = {}
        self.mappings: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, List[Dict[str, Any]]] = {}
        self.status_updates: List[Dict[str, Any]] = []
        self.fail_status_updates = False
        self.fail_pricing = False

    async def list_products(self, organization_id, updated_since=None, categories=None):
        rows = self.products.get(organization_id, [])
        if updated_since is not None:
            rows = [r for r in rows if r.get("updated_at") and r["updated_at"] >= updated_since]
        if categories:
            rows = [r for r in rows if r.get("category") in categories]
        return list(rows)

    async def get_product(self, organization_id, product_id):
        return next((p for p in self.products.get(organization_id, []) if p["id"] == product_id), None)

    async def list_product_ids(self, organization_id):
        return [str(p["id"]) for p in self.products.get(organization_id, [])]

    async def get_supplier_pricing(self, product_id):
        if self.fail_pricing:
            raise RuntimeError("pricing table unavailable")
        return list(self.pricing.get(product_id, []))

    async def get_suppliers(self, supplier_ids):
        return [self.suppliers[s] for s in supplier_ids if s in self.suppliers]

    async def get_erp_mapping(self, product_id):
        return next((m for m in self.mappings.values() if m.get("product_id") == product_id), None)

    async def get_mapping_by_erp_id(self, organization_id, erp_product_id):
        mapping = self.mappings.get(erp_product_id)
        if mapping is None or mapping.get("organization_id") != organization_id:
            return None
        return mapping

    async def get_document(self, organization_id, document_id):
        return next((d for d in self.documents.get(organization_id, []) if d["id"] == document_id), None)

    async def list_documents(self, organization_id, document_types=None, skip_processed=True, limit=1000):
        rows = self.documents.get(organization_id, [])
        if document_types:
            rows = [d for d in rows if d.get("document_type") in document_types]
        if skip_processed:
            rows = [d for d in rows if d.get("processing_status") not in ("rag_indexed", "rag_failed")]
        return list(rows)[:limit]

    async def list_failed_documents(self, organization_id, limit=10):
        rows = [d for d in self.documents.get(organization_id, []) if d.get("processing_status") == "rag_failed"]
        return rows[:limit]

    async def list_email_documents(self, organization_id, email_id):
        return [
            d for d in self.documents.get(organization_id, [])
            if (d.get("metadata") or {}).get("email_id") == email_id
        ]

    async def document_status_counts(self, organization_id):
        counts: Dict[str, int] = {}
        for d in self.documents.get(organization_id, []):
            status = d.get("processing_status") or "pending"
            counts[status] = counts.get(status, 0) + 1
        return counts

    async def update_document_status(self, document_id, status, knowledge_base_id=None, error=None):
        if self.fail_status_updates:
            raise RuntimeError("status write failed")
        self.status_updates.append({
            "document_id": document_id,
            "status": status,
            "knowledge_base_id": knowledge_base_id,
            "error": error,
        })
        for docs in self.documents.values():
            for d in docs:
                if d["id"] == document_id:
                    d["processing_status"] = status


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def error_log():
    return SuppressedErrorLog()


@pytest.fixture
def store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def ingestion(store, embedder):
    return RAGIngestion(store, embedder, record_delay=0)


@pytest.fixture
def retriever(store, embedder, error_log):
    return RAGRetriever(store, embedder, error_log=error_log)


@pytest.fixture
def tenant_store():
    return FakeTenantStore()
