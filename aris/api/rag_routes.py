"""
ARIS RAG API Routes
===================

Endpoints for the tenant knowledge base.

The tenant is taken from the X-Organization-Id header on every call;
every store read and write below is scoped to it.
"""

import logging
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from ..rag.adapters.magento import LANGUAGE_STORES
from ..rag.context import MemoryContextManager
from ..rag.models import BatchResult, ContentItem, IngestOptions, QueryContext, RetrievalOptions, SourceType
from ..rag.retriever import RAGRetriever
from ..rag.services import RAGServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rag", tags=["RAG"])

SYNCABLE_SOURCES = ("product", "document", "metakocka", "magento")


def get_services(request: Request) -> RAGServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="RAG services not initialized")
    return services


def get_organization_id(x_organization_id: str = Header(..., alias="X-Organization-Id")) -> str:
    if not x_organization_id.strip():
        raise HTTPException(status_code=400, detail="X-Organization-Id header is required")
    return x_organization_id.strip()


# =============================================================================
# MODELS
# =============================================================================

class RAGSearchRequest(BaseModel):
    """Knowledge base search request."""
    query: str = Field(..., min_length=1, description="Search query")
    source_types: Optional[List[SourceType]] = Field(None, description="Restrict to source types")
    limit: int = Field(10, ge=1, le=100)
    similarity_threshold: float = Field(0.7, ge=0.0, le=1.0)
    metadata_filters: Dict[str, Any] = Field(default_factory=dict)


class RAGSearchResult(BaseModel):
    chunk_id: str
    knowledge_base_id: str
    source_type: SourceType
    source_id: str
    title: str
    content: str
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RAGSearchResponse(BaseModel):
    query: str
    results: List[RAGSearchResult]
    total_found: int
    processing_time_ms: int
    formatted_context: str


class RAGIngestRequest(BaseModel):
    """Single content item to ingest."""
    title: str
    content: str
    source_type: SourceType
    source_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    force_update: bool = False
    chunk_size: Optional[int] = Field(None, gt=0)
    chunk_overlap: Optional[int] = Field(None, ge=0)
    skip_if_exists: bool = False


class RAGIngestResponse(BaseModel):
    knowledge_base_id: Optional[str]
    chunks_created: int
    tokens_processed: int
    processing_time_ms: int
    skipped: bool


class SyncOptions(BaseModel):
    """Per-source sync options."""
    batch_size: int = Field(10, ge=1)
    document_types: Optional[List[str]] = None
    recent_only: bool = False
    hours_back: int = Field(24, ge=1)
    categories: Optional[List[str]] = None
    languages: Optional[List[str]] = None


class RAGSyncRequest(BaseModel):
    source_types: List[str] = Field(..., description="product | document | metakocka | magento")
    options: SyncOptions = Field(default_factory=SyncOptions)
    force: bool = False
    user_id: Optional[str] = None


class RAGQueryRequest(BaseModel):
    query: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    email_id: Optional[str] = None
    source_types: Optional[List[SourceType]] = None
    use_memory: bool = False


class RAGContextRequest(BaseModel):
    query: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


# =============================================================================
# SEARCH
# =============================================================================

@router.post("/search", response_model=RAGSearchResponse)
async def search_knowledge(
    request: RAGSearchRequest,
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    """Similarity search over the tenant's knowledge base."""
    try:
        options = RetrievalOptions(
            source_types=request.source_types,
            limit=request.limit,
            similarity_threshold=request.similarity_threshold,
            metadata_filters=request.metadata_filters,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid filters: {e}")

    result = await services.retriever.retrieve(request.query, organization_id, options)
    return RAGSearchResponse(
        query=request.query,
        results=[
            RAGSearchResult(
                chunk_id=c.id,
                knowledge_base_id=c.knowledge_base_id,
                source_type=c.source_type,
                source_id=c.source_id,
                title=c.title,
                content=c.content,
                similarity=c.similarity,
                metadata=c.metadata,
            )
            for c in result.chunks
        ],
        total_found=result.total_found,
        processing_time_ms=result.processing_time_ms,
        formatted_context=RAGRetriever.format_context(result.chunks),
    )


# =============================================================================
# INGEST
# =============================================================================

@router.post("/ingest", response_model=RAGIngestResponse)
async def ingest_content(
    request: RAGIngestRequest,
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    try:
        item = ContentItem(
            title=request.title,
            content=request.content,
            source_type=request.source_type,
            source_id=request.source_id,
            metadata=request.metadata,
            force_update=request.force_update,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid content: {e}")

    result = await services.ingestion.ingest_content(
        organization_id,
        item,
        IngestOptions(
            chunk_size=request.chunk_size,
            chunk_overlap=request.chunk_overlap,
            skip_if_exists=request.skip_if_exists,
        ),
    )
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error or "Ingestion failed")

    return RAGIngestResponse(
        knowledge_base_id=result.knowledge_base_id,
        chunks_created=result.chunks_created,
        tokens_processed=result.tokens_processed,
        processing_time_ms=result.processing_time_ms,
        skipped=result.skipped,
    )


# =============================================================================
# SYNC
# =============================================================================

async def _sync_source(
    services: RAGServices,
    organization_id: str,
    source_type: str,
    request: RAGSyncRequest,
) -> BatchResult:
    options = request.options

    if source_type == "metakocka":
        return await services.metakocka_adapter.sync_all(organization_id, request.user_id)

    if source_type == "document":
        if services.document_adapter is None:
            raise RuntimeError("Document sync requires a tenant store")
        return await services.document_adapter.ingest_existing_documents(
            organization_id,
            batch_size=options.batch_size,
            document_types=options.document_types,
            skip_processed=not request.force,
        )

    if source_type == "product":
        adapter = services.product_adapter
        if adapter is None:
            raise RuntimeError("Product sync requires a tenant store")
        if options.recent_only:
            return await adapter.sync_recently_updated(organization_id, options.hours_back)
        if options.categories:
            return await adapter.sync_products_by_category(organization_id, options.categories)
        return await adapter.sync_all_products(organization_id)

    # magento
    languages = options.languages or [code for code, store in LANGUAGE_STORES.items() if store.priority == 1]
    result = BatchResult()
    for language in languages:
        try:
            result.merge(await services.magento_adapter.sync_products_by_language(organization_id, language))
        except Exception as e:
            result.failed += 1
            result.errors.append(f"{language}: {e}")
    result.details["languages"] = languages
    return result


@router.post("/sync")
async def sync_sources(
    request: RAGSyncRequest,
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    """
    Sync one or more data sources into the knowledge base.

    Each source is synced independently; one failing source does not
    stop the others.
    """
    if not request.source_types:
        raise HTTPException(status_code=400, detail="At least one source type must be specified")
    invalid = [s for s in request.source_types if s not in SYNCABLE_SOURCES]
    if invalid:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid source types: {', '.join(invalid)}. Valid types: {', '.join(SYNCABLE_SOURCES)}",
        )

    logger.info(f"[RAG Sync] Starting sync for organization {organization_id}, sources: {request.source_types}")
    start = time.monotonic()
    sync_results: Dict[str, Dict[str, Any]] = {}
    totals = BatchResult()

    for source_type in request.source_types:
        source_start = time.monotonic()
        try:
            result = await _sync_source(services, organization_id, source_type, request)
        except Exception as e:
            logger.error(f"[RAG Sync] {source_type} sync failed: {e}")
            result = BatchResult(failed=1, errors=[str(e)])
        totals.merge(result)
        sync_results[source_type] = {
            **result.to_dict(),
            "processing_time_ms": int((time.monotonic() - source_start) * 1000),
        }

    total_ms = int((time.monotonic() - start) * 1000)
    logger.info(f"[RAG Sync] Sync completed: {totals.successful}/{totals.processed} successful in {total_ms}ms")
    return {
        "success": True,
        "sync_results": sync_results,
        "totals": {**totals.to_dict(), "processing_time_ms": total_ms},
    }


# =============================================================================
# GENERATION / CONTEXT
# =============================================================================

@router.post("/query")
async def query_with_generation(
    request: RAGQueryRequest,
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    response = await services.generator.query_with_generation(
        request.query,
        organization_id,
        QueryContext(
            user_id=request.user_id,
            contact_id=request.contact_id,
            email_id=request.email_id,
            source_types=request.source_types,
            use_memory=request.use_memory,
        ),
    )
    return asdict(response)


@router.post("/context")
async def build_context(
    request: RAGContextRequest,
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    """Assemble the memory context window for a query."""
    result = await services.context_manager.build_optimized_context(
        request.query, organization_id, request.user_id, request.config
    )
    return {
        **asdict(result),
        "formatted": MemoryContextManager.format_for_prompt(result),
    }


# =============================================================================
# STATS / STATUS
# =============================================================================

@router.get("/stats")
async def get_rag_stats(
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    try:
        return await services.ingestion.get_system_stats(organization_id)
    except Exception as e:
        logger.error(f"RAG stats failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status")
async def rag_status(
    organization_id: str = Depends(get_organization_id),
    services: RAGServices = Depends(get_services),
):
    """Per-source sync status for the tenant."""
    status: Dict[str, Any] = {
        "store_backend": services.settings.rag.store_backend,
        "erp_configured": services.erp_client is not None,
        "magento_configured": services.settings.magento.is_configured,
        "metakocka": await services.metakocka_adapter.get_sync_status(organization_id),
        "cache": services.cache.get_stats(),
    }
    if services.document_adapter is not None:
        try:
            status["documents"] = await services.document_adapter.get_processing_stats(organization_id)
        except Exception as e:
            logger.error(f"Document stats failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
    if services.database is not None:
        status["database"] = services.database.check_health()
    return status
