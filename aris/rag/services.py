"""
RAG Services
============

Composition root for the RAG subsystem.

Builds the full object graph for one backend and owns its lifecycle:

    services = RAGServices.from_settings()
    services.init()
    ...
    services.shutdown()

`RAGServices.in_memory()` wires the same components over the in-memory
stores, for development and tests.
"""

import logging
from typing import Any, Optional

from ..ai.llm_client import LLMClient, get_llm_client
from ..cache.redis_cache import RedisCache
from ..data.config import Settings, get_settings
from ..data.database import Database
from ..data.metakocka_client import MetakockaClient
from ..data.tenant_store import SubscriptionPlanLookup, TenantStore
from ..logging_config import SuppressedErrorLog
from .adapters.document import DocumentRAGAdapter
from .adapters.magento import MagentoCatalogAdapter
from .adapters.metakocka import MetakockaRAGAdapter
from .adapters.product import ProductRAGAdapter
from .context import MemoryContextManager, StaticPlanLookup
from .embedder import RAGEmbedder
from .generation import RAGGenerator
from .ingestion import RAGIngestion
from .live_erp import LiveERPResponder
from .memory_store import InMemoryMemoryStore, MemoryStore, PgMemoryStore
from .retriever import RAGRetriever
from .store import InMemoryKnowledgeStore, KnowledgeStore, PgVectorKnowledgeStore

logger = logging.getLogger(__name__)


class RAGServices:
    """Object graph for one store backend."""

    def __init__(
        self,
        store: KnowledgeStore,
        memory_store: MemoryStore,
        embedder: RAGEmbedder,
        llm: LLMClient,
        cache: RedisCache,
        plan_lookup: Any,
        settings: Optional[Settings] = None,
        database: Optional[Database] = None,
        tenant_store: Optional[TenantStore] = None,
        erp_client: Optional[MetakockaClient] = None,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        self.settings = settings or get_settings()
        self.database = database
        self.store = store
        self.memory_store = memory_store
        self.embedder = embedder
        self.llm = llm
        self.cache = cache
        self.tenant_store = tenant_store
        self.erp_client = erp_client
        self.error_log = error_log or SuppressedErrorLog()

        rag = self.settings.rag
        delay = rag.record_delay_seconds

        self.ingestion = RAGIngestion(store, embedder, record_delay=delay)
        self.retriever = RAGRetriever(store, embedder, error_log=self.error_log)
        self.context_manager = MemoryContextManager(
            memory_store,
            embedder,
            plan_lookup,
            cache=cache,
            error_log=self.error_log,
            config_cache_ttl=rag.config_cache_ttl_seconds,
        )
        self.generator = RAGGenerator(self.retriever, llm, self.context_manager)
        self.live_erp = LiveERPResponder(self.retriever, self.generator, erp_client, error_log=self.error_log)

        self.metakocka_adapter = MetakockaRAGAdapter(
            self.ingestion, erp_client, tenant_store, record_delay=delay, error_log=self.error_log
        )
        self.magento_adapter = MagentoCatalogAdapter(
            self.ingestion, self.retriever, self.settings.magento, error_log=self.error_log
        )
        self.product_adapter: Optional[ProductRAGAdapter] = None
        self.document_adapter: Optional[DocumentRAGAdapter] = None
        if tenant_store is not None:
            self.product_adapter = ProductRAGAdapter(
                self.ingestion, tenant_store, self.retriever, record_delay=delay, error_log=self.error_log
            )
            self.document_adapter = DocumentRAGAdapter(
                self.ingestion, tenant_store, record_delay=delay, error_log=self.error_log
            )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RAGServices":
        """PostgreSQL-backed graph (or in-memory when RAG_STORE_BACKEND=memory)."""
        settings = settings or get_settings()
        embedder = RAGEmbedder(config=settings.openai)
        llm = get_llm_client(settings.openai.llm_provider, settings.openai.llm_model)

        if settings.rag.store_backend == "memory":
            return cls.in_memory(embedder, llm, settings=settings)

        database = Database(settings.database)
        tenant_store = TenantStore(database)
        erp_client = MetakockaClient(settings.metakocka) if settings.metakocka.is_configured else None

        return cls(
            store=PgVectorKnowledgeStore(database),
            memory_store=PgMemoryStore(database),
            embedder=embedder,
            llm=llm,
            cache=RedisCache(settings.cache.redis_url, prefix=settings.cache.prefix),
            plan_lookup=SubscriptionPlanLookup(database),
            settings=settings,
            database=database,
            tenant_store=tenant_store,
            erp_client=erp_client,
        )

    @classmethod
    def in_memory(
        cls,
        embedder: RAGEmbedder,
        llm: LLMClient,
        tenant_store: Optional[TenantStore] = None,
        erp_client: Optional[MetakockaClient] = None,
        plan_lookup: Any = None,
        settings: Optional[Settings] = None,
    ) -> "RAGServices":
        return cls(
            store=InMemoryKnowledgeStore(),
            memory_store=InMemoryMemoryStore(),
            embedder=embedder,
            llm=llm,
            cache=RedisCache(None),
            plan_lookup=plan_lookup or StaticPlanLookup(),
            settings=settings,
            tenant_store=tenant_store,
            erp_client=erp_client,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def init(self) -> None:
        if self.database is not None:
            self.database.init()
        self.store.init()
        logger.info(f"RAG services initialized ({type(self.store).__name__})")

    async def shutdown(self) -> None:
        await self.context_manager.flush()
        self.store.shutdown()
        if self.database is not None:
            self.database.shutdown()
        self.cache.close()
        logger.info("RAG services shut down")
