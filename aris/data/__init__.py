"""
ARIS Data Module
================

Configuration, PostgreSQL access and external system clients used by
the RAG core.

This module provides:
    - Settings / get_settings: environment-driven configuration
    - Database: owned psycopg2 connection pool with explicit init/shutdown
    - TenantStore / SubscriptionPlanLookup: tenant-scoped CRM reads
    - MetakockaClient: ERP client (products, partners, sales orders)
    - MagentoClient: multi-store catalog client
"""

from .config import get_settings, reset_settings, Settings
from .database import Database, DatabaseError
from .tenant_store import TenantStore, SubscriptionPlanLookup
from .metakocka_client import (
    MetakockaClient,
    MetakockaAPIError,
    MetakockaAuthError,
    MetakockaValidationError,
    ERPContext,
)
from .magento_client import MagentoClient, MagentoAPIError

__all__ = [
    "get_settings",
    "reset_settings",
    "Settings",
    "Database",
    "DatabaseError",
    "TenantStore",
    "SubscriptionPlanLookup",
    "MetakockaClient",
    "MetakockaAPIError",
    "MetakockaAuthError",
    "MetakockaValidationError",
    "ERPContext",
    "MagentoClient",
    "MagentoAPIError",
]
