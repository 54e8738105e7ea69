"""
Document RAG Adapter
====================

Ingests supplier documents whose text was already extracted upstream.

Text source, in order:
1. extracted_data.text_content
2. extracted_data.content
3. structured extracted_data (summary / products / pricing / suppliers)
4. a metadata-only block (file name, type, date, number, notes)

After each attempt the document's processing_status is set to
`rag_indexed` (with the knowledge base id) or `rag_failed` (with the
error). A failed status write never fails the ingestion itself.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ...data.tenant_store import TenantStore
from ...logging_config import SuppressedErrorLog
from ..ingestion import RAGIngestion
from ..models import BatchResult, ContentItem, IngestResult, SourceType, clean_metadata
from .base import Record, SourceAdapter

logger = logging.getLogger(__name__)


STATUS_INDEXED = "rag_indexed"
STATUS_FAILED = "rag_failed"


def format_structured_data(data: Dict[str, Any]) -> str:
    sections = []

    if data.get("summary"):
        sections.append(f"Summary: {data['summary']}")

    products = data.get("products")
    if isinstance(products, list) and products:
        blocks = []
        for product in products:
            parts = [f"Product: {product.get('name') or 'Unknown'}"]
            for label, key in (("SKU", "sku"), ("Description", "description"), ("Category", "category")):
                if product.get(key):
                    parts.append(f"{label}: {product[key]}")
            blocks.append("\n".join(parts))
        sections.append("Products:\n" + "\n\n".join(blocks))

    pricing = data.get("pricing")
    if isinstance(pricing, list) and pricing:
        blocks = []
        for row in pricing:
            parts = [f"Product: {row.get('product_name') or 'Unknown'}"]
            if row.get("price"):
                parts.append(f"Price: {row['price']} {row.get('currency') or 'EUR'}")
            if row.get("quantity"):
                parts.append(f"Quantity: {row['quantity']}")
            if row.get("unit"):
                parts.append(f"Unit: {row['unit']}")
            blocks.append("\n".join(parts))
        sections.append("Pricing:\n" + "\n\n".join(blocks))

    suppliers = data.get("suppliers")
    if isinstance(suppliers, list) and suppliers:
        sections.append("Suppliers:\n" + "\n".join(f"Supplier: {s.get('name') or 'Unknown'}" for s in suppliers))

    return "\n\n---\n\n".join(sections)


def fallback_content(document: Record) -> str:
    sections = [
        f"Document: {document.get('file_name')}",
        f"Type: {document.get('document_type')}",
        f"File Type: {document.get('file_type')}",
    ]
    if document.get("document_date"):
        sections.append(f"Date: {document['document_date']}")
    if document.get("document_number"):
        sections.append(f"Number: {document['document_number']}")
    if document.get("notes"):
        sections.append(f"Notes: {document['notes']}")

    metadata = document.get("metadata")
    if isinstance(metadata, dict):
        original = metadata.get("original_name")
        if original and original != document.get("file_name"):
            sections.append(f"Original Name: {original}")
        if metadata.get("size"):
            sections.append(f"Size: {round(metadata['size'] / 1024)} KB")

    return "\n".join(sections)


def extract_text(document: Record) -> str:
    data = document.get("extracted_data")
    if isinstance(data, dict):
        if data.get("text_content"):
            return data["text_content"]
        if data.get("content"):
            return data["content"]
        if data.get("products") or data.get("pricing") or data.get("summary"):
            return format_structured_data(data)
    logger.debug(f"[Document RAG] No extracted text for document {document.get('id')}, using metadata")
    return fallback_content(document)


class DocumentRAGAdapter(SourceAdapter):
    """Supplier documents -> knowledge base, with status write-back."""

    source_type = SourceType.DOCUMENT
    component = "Document RAG"
    chunk_size = 800
    chunk_overlap = 150

    def __init__(
        self,
        ingestion: RAGIngestion,
        tenant_store: TenantStore,
        record_delay: float = 0.2,
        batch_delay: float = 1.0,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        super().__init__(ingestion, record_delay, error_log)
        self.tenant_store = tenant_store
        self.batch_delay = batch_delay

    def record_label(self, record: Record) -> str:
        return str(record.get("file_name") or record.get("id"))

    def format_record(self, document: Record) -> ContentItem:
        metadata = clean_metadata({
            "document_type": document.get("document_type"),
            "file_type": document.get("file_type"),
            "file_name": document.get("file_name"),
            "document_date": document.get("document_date"),
            "document_number": document.get("document_number"),
            "supplier_id": document.get("supplier_id"),
            "file_size": document.get("file_size"),
            "uploaded_by": document.get("created_by"),
            "uploaded_at": document.get("created_at"),
            "has_extracted_data": bool(document.get("extracted_data")),
            "review_status": document.get("review_status"),
        })
        return ContentItem(
            title=document.get("file_name") or f"Document {document.get('id')}",
            content=extract_text(document),
            source_type=SourceType.DOCUMENT,
            source_id=str(document.get("id")),
            metadata=metadata,
        )

    # =========================================================================
    # STATUS WRITE-BACK
    # =========================================================================

    async def _write_status(self, document: Record, status: str, **kwargs) -> None:
        try:
            await self.tenant_store.update_document_status(str(document.get("id")), status, **kwargs)
        except Exception as e:
            self.error_log.record("document_adapter.status", e, source_id=str(document.get("id")))

    async def on_ingested(self, organization_id: str, record: Record, result: IngestResult) -> None:
        await self._write_status(record, STATUS_INDEXED, knowledge_base_id=result.knowledge_base_id)

    async def on_failed(self, organization_id: str, record: Record, error: str) -> None:
        await self._write_status(record, STATUS_FAILED, error=error)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def ingest_uploaded_document(self, document_id: str, organization_id: str) -> bool:
        """Ingest one freshly uploaded document. Returns success."""
        document = await self.tenant_store.get_document(organization_id, document_id)
        if document is None:
            logger.error(f"[{self.component}] Document {document_id} not found")
            return False
        result = await self.run_batch(organization_id, [document])
        return result.successful == 1

    async def ingest_existing_documents(
        self,
        organization_id: str,
        batch_size: int = 10,
        document_types: Optional[List[str]] = None,
        skip_processed: bool = True,
    ) -> BatchResult:
        """Bulk-ingest stored documents in batches with a pause between batches."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        documents = await self.tenant_store.list_documents(
            organization_id, document_types=document_types, skip_processed=skip_processed
        )
        result = BatchResult()
        if not documents:
            logger.info(f"[{self.component}] No documents found to process")
            return result

        total_batches = (len(documents) + batch_size - 1) // batch_size
        for start in range(0, len(documents), batch_size):
            batch_number = start // batch_size + 1
            result.merge(await self.run_batch(organization_id, documents[start:start + batch_size]))
            logger.info(f"[{self.component}] Processed batch {batch_number}/{total_batches}")
            if start + batch_size < len(documents) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        result.details["batches"] = total_batches
        return result

    async def ingest_email_attachments(self, organization_id: str, email_id: str) -> BatchResult:
        documents = await self.tenant_store.list_email_documents(organization_id, email_id)
        return await self.run_batch(organization_id, documents)

    async def reprocess_failed_documents(self, organization_id: str, limit: int = 10) -> BatchResult:
        documents = await self.tenant_store.list_failed_documents(organization_id, limit)
        logger.info(f"[{self.component}] Reprocessing {len(documents)} failed documents")
        return await self.run_batch(organization_id, documents)

    async def get_processing_stats(self, organization_id: str) -> Dict[str, int]:
        counts = await self.tenant_store.document_status_counts(organization_id)
        return {
            "total_documents": sum(counts.values()),
            "processed": counts.get(STATUS_INDEXED, 0),
            "failed": counts.get(STATUS_FAILED, 0),
            "pending": counts.get("pending", 0),
        }
