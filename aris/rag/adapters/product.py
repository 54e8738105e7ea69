"""
Product RAG Adapter
===================

Syncs the CRM product catalog into the knowledge base.

Each product is enriched with supplier pricing (reduced to min / max /
average), supplier names with reliability scores and its ERP mapping,
then rendered as a multi-section text block. Products are always
re-ingested (forced update) so the knowledge base tracks the catalog.
"""

import logging
from typing import Any, Dict, List, Optional

from ...data.tenant_store import TenantStore, cutoff
from ...logging_config import SuppressedErrorLog
from ..ingestion import RAGIngestion
from ..models import (
    BatchResult,
    ContentItem,
    IngestResult,
    RetrievalOptions,
    RetrievedChunk,
    SourceType,
    clean_metadata,
)
from ..retriever import RAGRetriever
from .base import Record, SourceAdapter

logger = logging.getLogger(__name__)


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ProductRAGAdapter(SourceAdapter):
    """Local product catalog -> knowledge base."""

    source_type = SourceType.PRODUCT
    component = "Product RAG"
    chunk_size = 600
    chunk_overlap = 100
    skip_if_exists = False

    def __init__(
        self,
        ingestion: RAGIngestion,
        tenant_store: TenantStore,
        retriever: Optional[RAGRetriever] = None,
        record_delay: float = 0.1,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        super().__init__(ingestion, record_delay, error_log)
        self.tenant_store = tenant_store
        self.retriever = retriever

    # =========================================================================
    # ENRICHMENT / FORMATTING
    # =========================================================================

    async def prepare(self, organization_id: str, record: Record) -> Record:
        return await self.enrich_product_data(record)

    async def enrich_product_data(self, product: Record) -> Record:
        """Attach pricing, suppliers and ERP mapping; the raw row if any lookup fails."""
        enriched = dict(product)
        product_id = str(product.get("id"))

        try:
            pricing = await self.tenant_store.get_supplier_pricing(product_id)
            if pricing:
                enriched["pricing"] = pricing
                prices = [p for p in (_to_float(row.get("price")) for row in pricing) if p is not None]
                if prices:
                    enriched["price_range"] = {
                        "min": min(prices),
                        "max": max(prices),
                        "average": sum(prices) / len(prices),
                    }

                supplier_ids = [str(row["supplier_id"]) for row in pricing if row.get("supplier_id")]
                suppliers = await self.tenant_store.get_suppliers(supplier_ids)
                if suppliers:
                    enriched["suppliers"] = suppliers

            mapping = await self.tenant_store.get_erp_mapping(product_id)
            if mapping:
                enriched["erp_mapping"] = mapping

        except Exception as e:
            self.error_log.record("product_adapter.enrich", e, source_id=product_id)
            return product

        return enriched

    def format_record(self, product: Record) -> ContentItem:
        sections = [f"Product: {product.get('name', '')}"]

        if product.get("sku"):
            sections.append(f"SKU: {product['sku']}")
        if product.get("category"):
            sections.append(f"Category: {product['category']}")
        if product.get("description"):
            sections.append(f"Description: {product['description']}")
        if product.get("unit"):
            sections.append(f"Unit: {product['unit']}")

        pricing = product.get("pricing") or []
        if pricing:
            info = ", ".join(
                f"{row.get('price')} {row.get('currency') or 'EUR'} per {row.get('unit') or 'unit'}"
                for row in pricing
            )
            sections.append(f"Pricing: {info}")
            price_range = product.get("price_range")
            if price_range:
                sections.append(
                    f"Price Range: {price_range['min']} - {price_range['max']} "
                    f"(avg: {price_range['average']:.2f})"
                )

        suppliers = product.get("suppliers") or []
        if suppliers:
            names = []
            for supplier in suppliers:
                score = supplier.get("reliability_score")
                names.append(f"{supplier.get('name')} (reliability: {score})" if score else str(supplier.get("name")))
            sections.append(f"Suppliers: {', '.join(names)}")

        mapping = product.get("erp_mapping")
        if mapping:
            sections.append(f"Metakocka Code: {mapping.get('metakocka_code')}")
            sections.append(f"Sync Status: {mapping.get('sync_status')}")

        extra = product.get("metadata")
        if isinstance(extra, dict):
            entries = "\n".join(f"{k}: {v}" for k, v in extra.items() if v not in (None, ""))
            if entries:
                sections.append(f"Additional Information:\n{entries}")

        price_range = product.get("price_range") or {}
        metadata = clean_metadata({
            "product_id": str(product.get("id")),
            "sku": product.get("sku"),
            "category": product.get("category"),
            "unit": product.get("unit"),
            "has_erp_mapping": bool(mapping),
            "supplier_count": len(suppliers),
            "price_min": price_range.get("min"),
            "price_max": price_range.get("max"),
            "price_avg": round(price_range["average"], 2) if price_range else None,
            "created_at": product.get("created_at"),
            "updated_at": product.get("updated_at"),
        })

        return ContentItem(
            title=product.get("name") or f"Product {product.get('id')}",
            content="\n\n".join(sections),
            source_type=SourceType.PRODUCT,
            source_id=str(product.get("id")),
            metadata=metadata,
        )

    # =========================================================================
    # SYNC OPERATIONS
    # =========================================================================

    async def sync_all_products(self, organization_id: str) -> BatchResult:
        logger.info(f"[{self.component}] Starting product sync for organization {organization_id}")
        products = await self.tenant_store.list_products(organization_id)
        if not products:
            logger.info(f"[{self.component}] No products found to sync")
            return BatchResult()
        return await self.ingest(organization_id, products)

    async def sync_single_product(self, organization_id: str, product: Record) -> IngestResult:
        result = await self.ingest_record(organization_id, product)
        if result.success:
            logger.info(f"[{self.component}] Synced product {product.get('name')} ({result.chunks_created} chunks)")
        return result

    async def sync_recently_updated(self, organization_id: str, hours_back: int = 24) -> BatchResult:
        products = await self.tenant_store.list_products(organization_id, updated_since=cutoff(hours=hours_back))
        logger.info(f"[{self.component}] Found {len(products)} products updated in the last {hours_back}h")
        return await self.ingest(organization_id, products)

    async def sync_products_by_category(self, organization_id: str, categories: List[str]) -> BatchResult:
        products = await self.tenant_store.list_products(organization_id, categories=categories)
        by_category: Dict[str, int] = {}
        for product in products:
            category = product.get("category") or "uncategorized"
            by_category[category] = by_category.get(category, 0) + 1

        result = await self.ingest(organization_id, products)
        result.details["by_category"] = by_category
        return result

    async def cleanup_deleted_products(self, organization_id: str) -> int:
        """Remove knowledge sources whose product no longer exists."""
        sources = await self.ingestion.store.list_sources(organization_id, SourceType.PRODUCT)
        if not sources:
            return 0

        existing = set(await self.tenant_store.list_product_ids(organization_id))
        removed = 0
        for source in sources:
            if source.source_id not in existing:
                if await self.ingestion.delete_knowledge_base(source.id, organization_id):
                    removed += 1

        if removed:
            logger.info(f"[{self.component}] Cleaned up {removed} deleted products")
        return removed

    async def search_products(
        self,
        query: str,
        organization_id: str,
        category: Optional[str] = None,
        limit: int = 10,
        similarity_threshold: float = 0.6,
    ) -> List[RetrievedChunk]:
        if self.retriever is None:
            raise RuntimeError("ProductRAGAdapter.search_products requires a retriever")
        result = await self.retriever.retrieve(
            query,
            organization_id,
            RetrievalOptions(
                source_types=[SourceType.PRODUCT],
                limit=limit,
                similarity_threshold=similarity_threshold,
                metadata_filters={"category": category} if category else {},
            ),
        )
        return result.chunks
