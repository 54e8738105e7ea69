"""
Metakocka RAG Adapter
=====================

Caches ERP products, customers and orders in the knowledge base.

Source ids are namespaced by record kind (`product:<id>`,
`customer:<id>`, `order:<id>`) so ids from different ERP collections
never collide inside the `metakocka` source type. Full syncs skip
records that are already indexed; sync-by-id forces an update.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ...data.metakocka_client import ERPContext, MetakockaClient
from ...data.tenant_store import TenantStore
from ...logging_config import SuppressedErrorLog
from ..ingestion import RAGIngestion
from ..models import BatchResult, ContentItem, IngestOptions, IngestResult, SourceType, clean_metadata
from .base import Record, SourceAdapter

logger = logging.getLogger(__name__)


KIND_PRODUCT = "product"
KIND_CUSTOMER = "customer"
KIND_ORDER = "order"


def namespaced_id(kind: str, record_id: Any) -> str:
    return f"{kind}:{record_id}"


class MetakockaRAGAdapter(SourceAdapter):
    """ERP snapshot -> knowledge base."""

    source_type = SourceType.METAKOCKA
    component = "Metakocka RAG"
    skip_if_exists = True

    def __init__(
        self,
        ingestion: RAGIngestion,
        client: Optional[MetakockaClient] = None,
        tenant_store: Optional[TenantStore] = None,
        record_delay: float = 0.1,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        super().__init__(ingestion, record_delay, error_log)
        self.client = client
        self.tenant_store = tenant_store

    # =========================================================================
    # FORMATTERS
    # =========================================================================

    def format_record(self, record: Record) -> ContentItem:
        kind = record.get("record_kind", KIND_PRODUCT)
        formatter = {
            KIND_PRODUCT: self.format_product,
            KIND_CUSTOMER: self.format_customer,
            KIND_ORDER: self.format_order,
        }.get(kind)
        if formatter is None:
            raise ValueError(f"Unknown ERP record kind: {kind}")
        return formatter(record)

    @staticmethod
    def format_product(product: Record) -> ContentItem:
        sections = [f"Product: {product.get('name')}"]
        if product.get("code"):
            sections.append(f"Code/SKU: {product['code']}")
        if product.get("description"):
            sections.append(f"Description: {product['description']}")
        if product.get("category"):
            sections.append(f"Category: {product['category']}")
        if product.get("price") is not None:
            sections.append(f"Price: {product['price']} {product.get('currency') or 'EUR'}")
        if product.get("stock_quantity") is not None:
            sections.append(f"Stock: {product['stock_quantity']} {product.get('unit') or 'units'}")
        extra = product.get("metadata")
        if isinstance(extra, dict) and extra:
            sections.append("Attributes:\n" + "\n".join(f"{k}: {v}" for k, v in extra.items()))

        price = product.get("price")
        return ContentItem(
            title=product.get("name") or f"Product {product.get('id')}",
            content="\n\n".join(sections),
            source_type=SourceType.METAKOCKA,
            source_id=namespaced_id(KIND_PRODUCT, product.get("id")),
            metadata=clean_metadata({
                "record_kind": KIND_PRODUCT,
                "metakocka_id": str(product.get("id")),
                "code": product.get("code"),
                "category": product.get("category"),
                "price": price if price is None or price >= 0 else None,
                "currency": product.get("currency"),
                "last_synced": datetime.now(timezone.utc),
            }),
        )

    @staticmethod
    def format_customer(customer: Record) -> ContentItem:
        sections = [f"Customer: {customer.get('name')}"]
        for label, key in (
            ("Customer Code", "code"),
            ("Email", "email"),
            ("Phone", "phone"),
            ("Address", "address"),
            ("Tax Number", "tax_number"),
            ("Notes", "notes"),
        ):
            if customer.get(key):
                sections.append(f"{label}: {customer[key]}")
        if customer.get("tags"):
            sections.append(f"Tags: {', '.join(str(t) for t in customer['tags'])}")

        return ContentItem(
            title=f"Customer: {customer.get('name')}",
            content="\n\n".join(sections),
            source_type=SourceType.METAKOCKA,
            source_id=namespaced_id(KIND_CUSTOMER, customer.get("id")),
            metadata=clean_metadata({
                "record_kind": KIND_CUSTOMER,
                "metakocka_id": str(customer.get("id")),
                "email": customer.get("email"),
                "code": customer.get("code"),
                "last_synced": datetime.now(timezone.utc),
            }),
        )

    @staticmethod
    def format_order(order: Record) -> ContentItem:
        sections = [f"Order: {order.get('order_number')}"]
        if order.get("customer_name"):
            sections.append(f"Customer: {order['customer_name']}")
        if order.get("order_date"):
            sections.append(f"Date: {order['order_date']}")
        if order.get("total_amount") is not None:
            sections.append(f"Total: {order['total_amount']} {order.get('currency') or 'EUR'}")
        if order.get("status"):
            sections.append(f"Status: {order['status']}")
        items = order.get("items") or []
        if items:
            lines = "\n".join(
                f"- {item.get('product_name')}: {item.get('quantity')} x {item.get('price')}" for item in items
            )
            sections.append(f"Items:\n{lines}")
        if order.get("notes"):
            sections.append(f"Notes: {order['notes']}")
        if order.get("delivery_address"):
            sections.append(f"Delivery Address: {order['delivery_address']}")

        return ContentItem(
            title=f"Order {order.get('order_number')}",
            content="\n\n".join(sections),
            source_type=SourceType.METAKOCKA,
            source_id=namespaced_id(KIND_ORDER, order.get("id")),
            metadata=clean_metadata({
                "record_kind": KIND_ORDER,
                "metakocka_id": str(order.get("id")),
                "order_number": order.get("order_number"),
                "customer_id": order.get("customer_id"),
                "status": order.get("status"),
                "last_synced": datetime.now(timezone.utc),
            }),
        )

    # =========================================================================
    # SYNC OPERATIONS
    # =========================================================================

    async def sync_all(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
        client: Optional[MetakockaClient] = None,
    ) -> BatchResult:
        """Fetch the ERP AI context and ingest products, customers and orders."""
        client = client or self.client
        result = BatchResult()
        if client is None:
            result.errors.append("Sync failed: no Metakocka client configured")
            return result

        logger.info(f"[{self.component}] Starting full sync for organization {organization_id}")
        try:
            context: ERPContext = await asyncio.to_thread(client.get_ai_context, user_id)
        except Exception as e:
            logger.error(f"[{self.component}] Sync failed: {e}")
            result.errors.append(f"Sync failed: {e}")
            return result

        options = self.default_options()
        counts: Dict[str, int] = {}
        for kind, records, formatter in (
            (KIND_PRODUCT, context.products, self.format_product),
            (KIND_CUSTOMER, context.customers, self.format_customer),
            (KIND_ORDER, context.orders, self.format_order),
        ):
            if not records:
                counts[kind] = 0
                continue
            batch = await self.run_batch(organization_id, records, options, formatter)
            counts[kind] = batch.successful
            result.merge(batch)

        result.details = {**counts, "total_ingested": sum(counts.values())}
        logger.info(
            f"[{self.component}] Sync completed: {result.details['total_ingested']} items, "
            f"{len(result.errors)} errors"
        )
        return result

    async def sync_product_by_id(self, organization_id: str, erp_product_id: str) -> IngestResult:
        """Re-ingest one mapped product, forcing an update."""
        if self.tenant_store is None:
            raise RuntimeError("sync_product_by_id requires a tenant store")

        mapping = await self.tenant_store.get_mapping_by_erp_id(organization_id, erp_product_id)
        if mapping is None:
            logger.warning(f"[{self.component}] No mapping found for product {erp_product_id}")
            return IngestResult(
                knowledge_base_id=None,
                chunks_created=0,
                tokens_processed=0,
                processing_time_ms=0,
                success=False,
                error=f"No mapping found for product {erp_product_id}",
            )

        item = self.format_product({
            "id": erp_product_id,
            "name": mapping.get("name"),
            "code": mapping.get("sku") or mapping.get("metakocka_code"),
            "description": mapping.get("description"),
            "category": mapping.get("category"),
            "metadata": mapping.get("metadata"),
        })
        item.force_update = True
        return await self.ingestion.ingest_content(organization_id, item, IngestOptions())

    async def cleanup_old_data(self, organization_id: str, older_than_days: int = 30) -> int:
        return await self.ingestion.cleanup_stale(organization_id, SourceType.METAKOCKA, older_than_days)

    async def get_sync_status(self, organization_id: str) -> Dict[str, Any]:
        sources = await self.ingestion.store.list_sources(organization_id, SourceType.METAKOCKA)
        kinds = Counter(s.metadata.get("record_kind") for s in sources)
        updated = [s.updated_at for s in sources if s.updated_at is not None]
        return {
            "last_sync_at": max(updated).isoformat() if updated else None,
            "total_items": len(sources),
            "product_count": kinds.get(KIND_PRODUCT, 0),
            "customer_count": kinds.get(KIND_CUSTOMER, 0),
            "order_count": kinds.get(KIND_ORDER, 0),
        }
