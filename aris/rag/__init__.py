"""
ARIS RAG Module
===============

Retrieval-Augmented Generation over tenant-scoped CRM knowledge.

Sources:
- product: local product catalog with supplier pricing
- document: supplier documents with extracted text
- metakocka: cached ERP products, customers and orders
- magento: per-language e-commerce catalogs

Architecture:
- pgvector (or in-memory) knowledge store, always filtered by organization
- OpenAI text-embedding-3-small for embeddings
- retrieval: source-type/metadata filter -> vector similarity -> threshold
- memory context assembly sized by subscription tier
"""

from .chunker import ChunkingConfig, DocumentChunker
from .context import MemoryContextConfig, MemoryContextManager
from .embedder import RAGEmbedder
from .generation import RAGGenerator
from .ingestion import RAGIngestion
from .live_erp import LiveERPResponder
from .models import (
    BatchResult,
    ContentItem,
    IngestOptions,
    IngestResult,
    QueryContext,
    RAGResponse,
    RetrievalOptions,
    RetrievalResult,
    SourceType,
)
from .retriever import RAGRetriever

__all__ = [
    "ChunkingConfig",
    "DocumentChunker",
    "RAGEmbedder",
    "RAGIngestion",
    "RAGRetriever",
    "RAGGenerator",
    "MemoryContextConfig",
    "MemoryContextManager",
    "LiveERPResponder",
    "BatchResult",
    "ContentItem",
    "IngestOptions",
    "IngestResult",
    "QueryContext",
    "RAGResponse",
    "RetrievalOptions",
    "RetrievalResult",
    "SourceType",
]
