"""
ARIS RAG Core
=============

Multi-tenant retrieval-augmented generation for the ARIS CRM:
chunking, ingestion, retrieval, memory context assembly and
grounded answer generation over tenant-scoped knowledge.
"""

__version__ = "1.0.0"
