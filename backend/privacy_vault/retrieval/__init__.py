"""Retrieval helpers."""

from .search import diversify, hydrate
from .vector_index import SearchResult, VectorIndex

__all__ = ["VectorIndex", "SearchResult", "diversify", "hydrate"]
