"""
RAG Source Adapters
===================

Turn tenant records (catalog products, supplier documents, ERP data,
localized Magento catalogs) into knowledge base content.
"""

from .base import SourceAdapter
from .document import DocumentRAGAdapter
from .magento import LANGUAGE_STORES, MagentoCatalogAdapter
from .metakocka import MetakockaRAGAdapter
from .product import ProductRAGAdapter

__all__ = [
    "SourceAdapter",
    "ProductRAGAdapter",
    "DocumentRAGAdapter",
    "MetakockaRAGAdapter",
    "MagentoCatalogAdapter",
    "LANGUAGE_STORES",
]
