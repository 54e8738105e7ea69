"""
ARIS Database Connection
========================

Owned psycopg2 connection pool with an explicit lifecycle.

The pool is created by init() and closed by shutdown(); nothing is
created at import time. Callers borrow connections through the
connection() context manager, which commits on success and rolls
back on failure.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from psycopg2 import pool as pg_pool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Database operation error."""
    pass


class Database:
    """PostgreSQL access through a ThreadedConnectionPool."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self._pool: Optional[pg_pool.ThreadedConnectionPool] = None

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    def init(self) -> None:
        """Create the connection pool. Idempotent."""
        if self._pool is not None:
            return
        params = self.config.connection_dict
        self._pool = pg_pool.ThreadedConnectionPool(
            minconn=self.config.pool_min_size,
            maxconn=self.config.pool_max_size,
            **params,
        )
        target = self.config.url.split("@")[-1] if self.config.url else f"{self.config.host}:{self.config.port}/{self.config.name}"
        logger.info(f"DB pool created: {target}")

    def shutdown(self) -> None:
        """Close every pooled connection."""
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("DB pool closed")

    @contextmanager
    def connection(self):
        """
        Get a database connection from the pool.

        Example:
            with database.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        if self._pool is None:
            raise DatabaseError("Database pool not initialized; call init() first")

        conn = None
        try:
            conn = self._pool.getconn()
            yield conn
            conn.commit()
        except DatabaseError:
            if conn:
                conn.rollback()
            raise
        except Exception as e:
            if conn:
                conn.rollback()
            raise DatabaseError(f"Database operation failed: {e}") from e
        finally:
            if conn:
                self._pool.putconn(conn)

    def check_health(self) -> Dict[str, Any]:
        """
        Check database health. Returns status dict.
        Returns 'disconnected' instead of raising if the DB is not reachable.
        """
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT version(), EXISTS (SELECT 1 FROM pg_extension WHERE extname = 'vector')")
                    row = cur.fetchone()
            version = row[0].split(",")[0] if row[0] else "unknown"
            return {
                "status": "connected",
                "version": version,
                "pgvector": bool(row[1]),
            }
        except DatabaseError as e:
            logger.warning(f"DB health check failed: {e}")
            return {
                "status": "disconnected",
                "error": str(e),
            }
