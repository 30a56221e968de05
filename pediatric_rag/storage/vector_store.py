"""
Corpus store adapters.

The retriever talks to the corpus through the ``CorpusStore`` protocol:

- WeaviateCorpusStore: the production store, a Weaviate collection queried with
  the async client. Metadata filters are translated to Weaviate filters.
- InMemoryCorpusStore: a list of chunks held in memory, loadable from a JSON
  export of the corpus. Used for local runs and tests.
"""

import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import numpy as np
from weaviate.client import WeaviateAsyncClient
from weaviate.classes.query import Filter, MetadataQuery
from weaviate.exceptions import WeaviateBaseError

from ..errors import CollaboratorError
from ..models.queries import URGENCY_ORDER
from ..models.retrieval import ChunkMetadata, CorpusFilters, DocumentChunk

logger = logging.getLogger("PediatricRAG")

DEFAULT_COLLECTION = "NelsonPediatrics"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class CorpusStore(Protocol):
    """Candidate chunk lookup with metadata filters."""

    async def search(
        self,
        filters: CorpusFilters,
        limit: int,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[DocumentChunk]: ...

    async def ping(self) -> None: ...


class InMemoryCorpusStore:
    """Holds the corpus in memory and ranks by cosine similarity when given a vector."""

    def __init__(self, chunks: Optional[Sequence[DocumentChunk]] = None):
        self.chunks: List[DocumentChunk] = list(chunks or [])

    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryCorpusStore":
        """Load a JSON array of chunk objects (id, content, embedding, metadata)."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        chunks = [DocumentChunk.model_validate(item) for item in data]
        logger.info(f"Loaded {len(chunks)} chunks from {path}")
        return cls(chunks)

    def add(self, chunk: DocumentChunk) -> None:
        self.chunks.append(chunk)

    async def search(
        self,
        filters: CorpusFilters,
        limit: int,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[DocumentChunk]:
        candidates = [c for c in self.chunks if filters.admits(c)]
        if query_vector is not None:
            def score(chunk: DocumentChunk) -> float:
                if not chunk.embedding or len(chunk.embedding) != len(query_vector):
                    return -1.0
                return cosine_similarity(query_vector, chunk.embedding)

            candidates.sort(key=score, reverse=True)
        return candidates[:limit]

    async def ping(self) -> None:
        if not self.chunks:
            raise CollaboratorError("In-memory corpus is empty", service="corpus")


class WeaviateCorpusStore:
    """
    Corpus store backed by a Weaviate collection.

    Filters are applied server-side, so a chunk with no value for a filtered
    property is excluded here even though ``CorpusFilters.admits`` would let it
    through.
    """

    def __init__(
        self,
        weaviate_client: WeaviateAsyncClient,
        collection_name: str = DEFAULT_COLLECTION,
        target_vector: Optional[str] = None,
    ):
        """
        Initialize the store.

        Args:
            weaviate_client: Connected asynchronous Weaviate client
            collection_name: Name of the collection holding the corpus chunks
            target_vector: Named vector to search, for collections with several
        """
        self.weaviate_client = weaviate_client
        self.collection_name = collection_name
        self.target_vector = target_vector

    def _build_filter(self, filters: CorpusFilters):
        clauses = []
        if filters.specialties:
            clauses.append(
                Filter.by_property("medical_specialties").contains_any(sorted(filters.specialties))
            )
        if filters.age_groups:
            clauses.append(
                Filter.by_property("age_groups").contains_any(sorted(filters.age_groups))
            )
        if filters.min_urgency:
            allowed = URGENCY_ORDER[URGENCY_ORDER.index(filters.min_urgency):]
            clauses.append(Filter.by_property("urgency_level").contains_any(allowed))
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return Filter.all_of(clauses)

    async def search(
        self,
        filters: CorpusFilters,
        limit: int,
        query_vector: Optional[Sequence[float]] = None,
    ) -> List[DocumentChunk]:
        collection = self.weaviate_client.collections.get(self.collection_name)
        weaviate_filter = self._build_filter(filters)
        try:
            if query_vector is not None:
                response = await collection.query.near_vector(
                    near_vector=list(query_vector),
                    limit=limit,
                    filters=weaviate_filter,
                    target_vector=self.target_vector,
                    include_vector=True,
                    return_metadata=MetadataQuery(distance=True),
                )
            else:
                response = await collection.query.fetch_objects(
                    limit=limit,
                    filters=weaviate_filter,
                    include_vector=True,
                )
        except WeaviateBaseError as e:
            raise CollaboratorError(f"Weaviate search failed: {e}", service="corpus") from e

        chunks = [self._to_chunk(obj) for obj in response.objects]
        logger.debug(f"Weaviate returned {len(chunks)} chunks from {self.collection_name}")
        return chunks

    def _to_chunk(self, obj: Any) -> DocumentChunk:
        props: Dict[str, Any] = dict(obj.properties or {})
        vector = obj.vector
        if isinstance(vector, dict):
            vector = vector.get(self.target_vector or "default") or next(iter(vector.values()), None)

        last_reviewed = props.get("last_reviewed")
        if isinstance(last_reviewed, datetime):
            last_reviewed = last_reviewed.date()
        elif isinstance(last_reviewed, str):
            last_reviewed = date.fromisoformat(last_reviewed[:10])

        metadata = ChunkMetadata(
            chapter=props.get("chapter") or "",
            section=props.get("section") or "",
            title=props.get("title") or "",
            source=props.get("source") or "Nelson Textbook of Pediatrics",
            medical_specialties=props.get("medical_specialties") or [],
            age_groups=props.get("age_groups") or [],
            urgency_level=props.get("urgency_level"),
            evidence_level=props.get("evidence_level"),
            last_reviewed=last_reviewed,
            chunk_index=int(props.get("chunk_index") or 0),
            total_chunks=int(props.get("total_chunks") or 1),
            page=props.get("page"),
        )
        return DocumentChunk(
            id=str(props.get("chunk_id") or obj.uuid),
            content=props.get("content") or "",
            embedding=list(vector) if vector else None,
            metadata=metadata,
        )

    async def ping(self) -> None:
        try:
            exists = await self.weaviate_client.collections.exists(self.collection_name)
        except WeaviateBaseError as e:
            raise CollaboratorError(f"Weaviate unreachable: {e}", service="corpus") from e
        if not exists:
            raise CollaboratorError(
                f"Collection not found: {self.collection_name}", service="corpus"
            )
