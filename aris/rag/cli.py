"""
RAG CLI
=======

Command-line interface for RAG management.

Usage:
    python -m aris.rag.cli init                              # Apply database schema
    python -m aris.rag.cli sync ORG product document         # Sync sources
    python -m aris.rag.cli sync ORG magento --language de    # Sync one Magento store
    python -m aris.rag.cli search ORG "query"                # Test search
    python -m aris.rag.cli context ORG "query" --user USER   # Build memory context
    python -m aris.rag.cli stats ORG                         # Show statistics
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from ..data.config import get_settings
from ..logging_config import setup_logging
from .context import MemoryContextManager
from .models import BatchResult, RetrievalOptions, SourceType
from .retriever import RAGRetriever
from .services import RAGServices

logger = logging.getLogger(__name__)

MIGRATION_PATH = Path(__file__).resolve().parents[2] / "database" / "migrations" / "001_rag_pgvector.sql"


def init_schema() -> bool:
    """Apply the pgvector schema."""
    import psycopg2

    settings = get_settings()
    if not settings.database.is_configured:
        logger.error("DATABASE_URL not set")
        return False

    if not MIGRATION_PATH.exists():
        logger.error(f"Migration file not found: {MIGRATION_PATH}")
        return False

    try:
        conn = psycopg2.connect(**settings.database.connection_dict)
        with conn.cursor() as cur:
            cur.execute(MIGRATION_PATH.read_text())
        conn.commit()
        conn.close()
        logger.info("RAG schema initialized successfully")
        return True
    except psycopg2.Error as e:
        logger.error(f"Failed to initialize schema: {e}")
        return False


async def sync_sources(services: RAGServices, organization_id: str, sources, language=None) -> bool:
    total = BatchResult()
    for source in sources:
        if source == "product" and services.product_adapter is not None:
            result = await services.product_adapter.sync_all_products(organization_id)
        elif source == "document" and services.document_adapter is not None:
            result = await services.document_adapter.ingest_existing_documents(organization_id)
        elif source == "metakocka":
            result = await services.metakocka_adapter.sync_all(organization_id)
        elif source == "magento":
            result = await services.magento_adapter.sync_products_by_language(organization_id, language or "en")
        else:
            logger.error(f"Source '{source}' is not available with the current configuration")
            return False
        total.merge(result)
        print(f"{source}: {result.successful}/{result.processed} successful, {result.failed} failed")

    for error in total.errors[:20]:
        print(f"  ! {error}")
    return total.failed == 0


async def search(services: RAGServices, organization_id: str, query: str, limit: int, threshold: float) -> bool:
    result = await services.retriever.retrieve(
        query,
        organization_id,
        RetrievalOptions(
            source_types=RAGRetriever.determine_relevant_sources(query),
            limit=limit,
            similarity_threshold=threshold,
        ),
    )

    print(f"\n{'='*60}")
    print(f"Query: {query}")
    print(f"Results: {len(result.chunks)} ({result.processing_time_ms}ms)")
    print('='*60)

    for i, chunk in enumerate(result.chunks, 1):
        print(f"\n[{i}] Similarity: {chunk.similarity:.3f}")
        print(f"    Source: {chunk.source_type.value}/{chunk.source_id}")
        print(f"    Title: {chunk.title}")
        print(f"    Content: {chunk.content[:200]}...")

    print(f"\n{'='*60}")
    print("FORMATTED CONTEXT FOR LLM:")
    print('='*60)
    print(RAGRetriever.format_context(result.chunks))
    return True


async def build_context(services: RAGServices, organization_id: str, query: str, user_id=None) -> bool:
    result = await services.context_manager.build_optimized_context(query, organization_id, user_id)
    await services.context_manager.flush()

    print(f"Strategy: {result.prioritization_strategy}")
    print(f"Memories: {len(result.memories)} ({result.total_tokens} tokens, truncated={result.truncated})")
    print(f"Metadata: {result.metadata}")
    print()
    print(MemoryContextManager.format_for_prompt(result))
    return result.prioritization_strategy != "error"


async def show_stats(services: RAGServices, organization_id: str) -> bool:
    stats = await services.ingestion.get_system_stats(organization_id)

    print(f"\n{'='*60}")
    print("RAG STATISTICS")
    print('='*60)
    print(f"\nTotal sources: {stats['total_sources']}")
    for source_type, count in stats.get("sources_by_type", {}).items():
        print(f"  {source_type}: {count}")
    print(f"\nTotal chunks: {stats['total_chunks']}")
    print(f"Average chunk tokens: {stats.get('average_chunk_tokens', 0)}")

    status = await services.metakocka_adapter.get_sync_status(organization_id)
    print(f"\nMetakocka last sync: {status['last_sync_at'] or 'never'}")
    return True


async def _run(args) -> bool:
    services = RAGServices.from_settings()
    services.init()
    try:
        if args.command == "sync":
            return await sync_sources(services, args.organization, args.sources, args.language)
        if args.command == "search":
            return await search(services, args.organization, args.query, args.limit, args.threshold)
        if args.command == "context":
            return await build_context(services, args.organization, args.query, args.user)
        return await show_stats(services, args.organization)
    finally:
        await services.shutdown()


def main():
    load_dotenv()
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.json_logs, settings.logging.log_file)

    parser = argparse.ArgumentParser(description="ARIS RAG Knowledge Base CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init", help="Initialize database schema")

    sync_parser = subparsers.add_parser("sync", help="Sync data sources")
    sync_parser.add_argument("organization", help="Organization id")
    sync_parser.add_argument(
        "sources", nargs="+",
        choices=[s.value for s in (SourceType.PRODUCT, SourceType.DOCUMENT, SourceType.METAKOCKA, SourceType.MAGENTO)],
    )
    sync_parser.add_argument("--language", default=None, help="Magento store language")

    search_parser = subparsers.add_parser("search", help="Test search")
    search_parser.add_argument("organization", help="Organization id")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--limit", type=int, default=5, help="Number of results")
    search_parser.add_argument("--threshold", type=float, default=0.7, help="Similarity threshold")

    context_parser = subparsers.add_parser("context", help="Build memory context")
    context_parser.add_argument("organization", help="Organization id")
    context_parser.add_argument("query", help="Query")
    context_parser.add_argument("--user", default=None, help="User id")

    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.add_argument("organization", help="Organization id")

    args = parser.parse_args()

    if args.command == "init":
        success = init_schema()
    elif args.command in ("sync", "search", "context", "stats"):
        success = asyncio.run(_run(args))
    else:
        parser.print_help()
        return

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
