"""
ARIS RAG FastAPI Application
============================

REST API for the ARIS knowledge base.

Endpoints:
    GET  /api/health       - Health check
    POST /api/rag/search   - Similarity search
    POST /api/rag/ingest   - Ingest one content item
    POST /api/rag/sync     - Sync data sources
    POST /api/rag/query    - Grounded answer generation
    POST /api/rag/context  - Memory context assembly
    GET  /api/rag/stats    - Knowledge base statistics
    GET  /api/rag/status   - Per-source sync status

Usage:
    uvicorn aris.api.main:app --reload --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..data.config import get_settings
from ..logging_config import setup_logging
from ..rag.services import RAGServices
from .rag_routes import router as rag_router

logger = logging.getLogger(__name__)


def create_app(services: Optional[RAGServices] = None) -> FastAPI:
    """
    Build the application.

    With no services the lifespan builds them from settings; injected
    services are still initialized and shut down by the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ARIS RAG API...")
        app.state.services = services or RAGServices.from_settings()
        app.state.services.init()

        yield

        await app.state.services.shutdown()
        logger.info("Shutting down ARIS RAG API...")

    app = FastAPI(
        title="ARIS RAG API",
        description="Tenant-scoped knowledge base for the ARIS CRM",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS_ORIGINS (comma-separated) extends the local defaults
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    extra = os.getenv("CORS_ORIGINS", "")
    if extra:
        origins.extend(o.strip() for o in extra.split(",") if o.strip())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rag_router)

    @app.get("/api/health")
    async def health_check():
        current = app.state.services
        database = current.database.check_health() if current.database is not None else {"status": "not_used"}
        healthy = database["status"] in ("connected", "not_used")
        return {
            "status": "healthy" if healthy else "degraded",
            "version": "1.0.0",
            "store_backend": current.settings.rag.store_backend,
            "database": database["status"],
            "cache": current.cache.backend,
        }

    return app


def _build_default_app() -> FastAPI:
    load_dotenv()
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.json_logs, settings.logging.log_file)
    return create_app()


app = _build_default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("aris.api.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
