"""
ARIS Tenant Store
=================

Read access to the tenant-owned CRM tables the RAG adapters ingest from
(products, supplier pricing, suppliers, ERP mappings, supplier documents),
plus the document processing-status write-back and the subscription /
user-setting lookups used by the memory context manager.

Every query is filtered by organization_id where the table carries one.
Blocking psycopg2 calls run in a worker thread.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from psycopg2.extras import Json, RealDictCursor

from .database import Database

logger = logging.getLogger(__name__)


class TenantStore:
    """Tenant-scoped reads over the CRM tables."""

    def __init__(self, database: Database):
        self.database = database

    # =========================================================================
    # LOW-LEVEL
    # =========================================================================

    def _fetch_all_sync(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]

    def _fetch_one_sync(self, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> int:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount

    async def _fetch_all(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_all_sync, sql, params)

    async def _fetch_one(self, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_one_sync, sql, params)

    async def _execute(self, sql: str, params: Sequence[Any]) -> int:
        return await asyncio.to_thread(self._execute_sync, sql, params)

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def list_products(
        self,
        organization_id: str,
        updated_since: Optional[datetime] = None,
        categories: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """List an organization's products, optionally filtered."""
        sql = "SELECT * FROM products WHERE organization_id = %s"
        params: List[Any] = [organization_id]
        if updated_since is not None:
            sql += " AND updated_at >= %s"
            params.append(updated_since)
        if categories:
            sql += " AND category = ANY(%s)"
            params.append(list(categories))
        sql += " ORDER BY updated_at DESC NULLS LAST"
        return await self._fetch_all(sql, params)

    async def get_product(self, organization_id: str, product_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            "SELECT * FROM products WHERE organization_id = %s AND id = %s",
            (organization_id, product_id),
        )

    async def list_product_ids(self, organization_id: str) -> List[str]:
        rows = await self._fetch_all(
            "SELECT id FROM products WHERE organization_id = %s",
            (organization_id,),
        )
        return [str(row["id"]) for row in rows]

    async def get_supplier_pricing(self, product_id: str) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            """
            SELECT supplier_id, price, currency, unit
            FROM supplier_pricing
            WHERE product_id = %s
            """,
            (product_id,),
        )

    async def get_suppliers(self, supplier_ids: List[str]) -> List[Dict[str, Any]]:
        if not supplier_ids:
            return []
        return await self._fetch_all(
            "SELECT id, name, reliability_score FROM suppliers WHERE id = ANY(%s)",
            (list(supplier_ids),),
        )

    async def get_erp_mapping(self, product_id: str) -> Optional[Dict[str, Any]]:
        """ERP mapping row for a CRM product, if one exists."""
        return await self._fetch_one(
            """
            SELECT product_id, metakocka_id, metakocka_code, sync_status, last_synced_at
            FROM metakocka_product_mappings
            WHERE product_id = %s
            LIMIT 1
            """,
            (product_id,),
        )

    async def get_mapping_by_erp_id(self, organization_id: str, erp_product_id: str) -> Optional[Dict[str, Any]]:
        """Mapping plus the CRM product it points at, looked up by ERP id."""
        return await self._fetch_one(
            """
            SELECT m.metakocka_id, m.metakocka_code, m.sync_status,
                   p.id, p.name, p.sku, p.description, p.category, p.unit, p.metadata
            FROM metakocka_product_mappings m
            JOIN products p ON p.id = m.product_id
            WHERE m.metakocka_id = %s AND p.organization_id = %s
            LIMIT 1
            """,
            (erp_product_id, organization_id),
        )

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    async def get_document(self, organization_id: str, document_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            "SELECT * FROM supplier_documents WHERE id = %s AND organization_id = %s",
            (document_id, organization_id),
        )

    async def list_documents(
        self,
        organization_id: str,
        document_types: Optional[List[str]] = None,
        skip_processed: bool = True,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM supplier_documents WHERE organization_id = %s"
        params: List[Any] = [organization_id]
        if document_types:
            sql += " AND document_type = ANY(%s)"
            params.append(list(document_types))
        if skip_processed:
            sql += " AND (processing_status IS NULL OR processing_status NOT IN ('rag_indexed', 'rag_failed'))"
        sql += " ORDER BY created_at LIMIT %s"
        params.append(limit)
        return await self._fetch_all(sql, params)

    async def list_failed_documents(self, organization_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            """
            SELECT * FROM supplier_documents
            WHERE organization_id = %s AND processing_status = 'rag_failed'
            ORDER BY created_at
            LIMIT %s
            """,
            (organization_id, limit),
        )

    async def list_email_documents(self, organization_id: str, email_id: str) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            """
            SELECT * FROM supplier_documents
            WHERE organization_id = %s AND metadata @> %s::jsonb
            """,
            (organization_id, Json({"from_email": True, "email_id": email_id})),
        )

    async def document_status_counts(self, organization_id: str) -> Dict[str, int]:
        rows = await self._fetch_all(
            """
            SELECT COALESCE(processing_status, 'pending') AS status, COUNT(*) AS count
            FROM supplier_documents
            WHERE organization_id = %s
            GROUP BY 1
            """,
            (organization_id,),
        )
        return {row["status"]: int(row["count"]) for row in rows}

    async def update_document_status(
        self,
        document_id: str,
        status: str,
        knowledge_base_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Write the processing status back onto a supplier document."""
        sql = "UPDATE supplier_documents SET processing_status = %s, processing_completed_at = %s"
        params: List[Any] = [status, datetime.now(timezone.utc)]
        if knowledge_base_id:
            sql += ", metadata = COALESCE(metadata, '{}'::jsonb) || %s::jsonb"
            params.append(Json({"rag_knowledge_base_id": knowledge_base_id}))
        if error:
            sql += ", processing_error = %s"
            params.append(error)
        sql += " WHERE id = %s"
        params.append(document_id)
        await self._execute(sql, params)


class SubscriptionPlanLookup(TenantStore):
    """Plan features and per-user overrides for context assembly."""

    async def get_plan(self, organization_id: str) -> Optional[Dict[str, Any]]:
        """Active plan for an organization: {'tier': ..., 'features': {...}}."""
        row = await self._fetch_one(
            """
            SELECT sp.name AS tier, sp.features
            FROM organization_subscriptions os
            JOIN subscription_plans sp ON sp.id = os.subscription_plan_id
            WHERE os.organization_id = %s AND os.status = 'active'
            ORDER BY os.created_at DESC
            LIMIT 1
            """,
            (organization_id,),
        )
        if row is None:
            return None
        return {"tier": row.get("tier"), "features": row.get("features") or {}}

    async def get_user_settings(self, organization_id: str, user_id: str) -> Dict[str, Any]:
        """Per-user agent settings keyed by setting name."""
        rows = await self._fetch_all(
            "SELECT setting_key, setting_value FROM ai_agent_settings WHERE organization_id = %s AND user_id = %s",
            (organization_id, user_id),
        )
        return {row["setting_key"]: row["setting_value"] for row in rows}


def cutoff(hours: int = 0, days: int = 0, now: Optional[datetime] = None) -> datetime:
    """UTC timestamp `hours`/`days` before now."""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(hours=hours, days=days)
