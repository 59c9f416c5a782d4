"""
Deep Search Server API Module
REST API endpoints for search answers and conversation sessions
"""

from .search import router as search_router

__all__ = [
    "search_router",
]
