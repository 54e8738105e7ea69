"""
ARIS API
========

FastAPI application and RAG routes.
"""
