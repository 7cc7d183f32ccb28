"""Search functionality for code-context."""

from .searcher import SemanticSearchService, format_hit, make_search_service, search

__all__ = ["SemanticSearchService", "format_hit", "make_search_service", "search"]
