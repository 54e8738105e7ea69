"""
Source Adapter Base
===================

Record-by-record ingestion shared by all adapters.

A batch is not transactional: a record that fails to format or ingest
is reported in `errors` and the loop moves on. Records are processed
sequentially with a fixed pause between them to stay under downstream
rate limits.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional

from ...logging_config import SuppressedErrorLog
from ..ingestion import RAGIngestion
from ..models import BatchResult, ContentItem, IngestOptions, IngestResult, SourceType

logger = logging.getLogger(__name__)


Record = Dict[str, Any]


class SourceAdapter(ABC):
    """Turns source records into content items and ingests them."""

    source_type: SourceType = SourceType.OTHER
    component: str = "Adapter"

    # Chunking and update policy applied when the caller passes no options
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    skip_if_exists: bool = False

    def __init__(
        self,
        ingestion: RAGIngestion,
        record_delay: float = 0.1,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        self.ingestion = ingestion
        self.record_delay = record_delay
        self.error_log = error_log or SuppressedErrorLog()

    @abstractmethod
    def format_record(self, record: Record) -> ContentItem:
        """Render one source record as a content item."""
        pass

    def record_label(self, record: Record) -> str:
        return str(record.get("name") or record.get("title") or record.get("id") or "record")

    def default_options(self) -> IngestOptions:
        return IngestOptions(
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
            skip_if_exists=self.skip_if_exists,
        )

    async def prepare(self, organization_id: str, record: Record) -> Record:
        """Enrichment hook run before formatting."""
        return record

    async def on_ingested(self, organization_id: str, record: Record, result: IngestResult) -> None:
        pass

    async def on_failed(self, organization_id: str, record: Record, error: str) -> None:
        pass

    async def delay(self) -> None:
        if self.record_delay > 0:
            await asyncio.sleep(self.record_delay)

    async def ingest_record(
        self,
        organization_id: str,
        record: Record,
        options: Optional[IngestOptions] = None,
        formatter: Optional[Callable[[Record], ContentItem]] = None,
    ) -> IngestResult:
        """
        Prepare, format and ingest a single record.

        Formatting errors (including invalid metadata) propagate; ingestion
        failures come back as an unsuccessful IngestResult.
        """
        prepared = await self.prepare(organization_id, record)
        item = (formatter or self.format_record)(prepared)
        return await self.ingestion.ingest_content(organization_id, item, options or self.default_options())

    async def run_batch(
        self,
        organization_id: str,
        records: Iterable[Record],
        options: Optional[IngestOptions] = None,
        formatter: Optional[Callable[[Record], ContentItem]] = None,
    ) -> BatchResult:
        result = BatchResult()

        for i, record in enumerate(records):
            if i > 0:
                await self.delay()

            result.processed += 1
            label = self.record_label(record)

            try:
                outcome = await self.ingest_record(organization_id, record, options, formatter)
                error = outcome.error if not outcome.success else None
            except Exception as e:
                outcome = None
                error = str(e) or type(e).__name__

            if error is None:
                result.successful += 1
                if outcome.skipped:
                    result.skipped += 1
                await self.on_ingested(organization_id, record, outcome)
            else:
                result.failed += 1
                result.errors.append(f"{label}: {error}")
                logger.warning(f"[{self.component}] Failed to ingest {label}: {error}")
                await self.on_failed(organization_id, record, error)

        logger.info(
            f"[{self.component}] Batch completed: {result.successful}/{result.processed} successful",
            extra={"organization_id": organization_id, "source_type": self.source_type.value},
        )
        return result

    async def ingest(
        self,
        organization_id: str,
        records: Iterable[Record],
        options: Optional[IngestOptions] = None,
    ) -> BatchResult:
        """Ingest records one by one; returns {processed, successful, failed, errors}."""
        return await self.run_batch(organization_id, records, options)
