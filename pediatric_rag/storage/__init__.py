"""
Storage components: the corpus store adapters and the in-memory result cache.
"""

from .cache import ResultCache, make_key, normalize_query
from .vector_store import (
    CorpusStore,
    InMemoryCorpusStore,
    WeaviateCorpusStore,
    cosine_similarity,
)

__all__ = [
    "CorpusStore",
    "InMemoryCorpusStore",
    "ResultCache",
    "WeaviateCorpusStore",
    "cosine_similarity",
    "make_key",
    "normalize_query",
]
