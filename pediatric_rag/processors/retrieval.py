import logging
from datetime import date
from typing import Callable, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import CollaboratorError, CorpusError, EmbeddingError
from ..models.queries import MedicalContext
from ..models.retrieval import (
    AGE_COMPATIBILITY,
    CorpusFilters,
    DocumentChunk,
    RetrievalResult,
    ScoredChunk,
)
from ..services.embeddings import EmbeddingClient
from ..services.retry import call_with_retries
from ..storage.cache import ResultCache, make_key
from ..storage.vector_store import CorpusStore, cosine_similarity
from .base import log_timing

logger = logging.getLogger("PediatricRAG")

EVIDENCE_SCORES = {
    "high": 1.0,
    "medium": 0.7,
    "low": 0.4,
    "expert_opinion": 0.6,
}
UNKNOWN_EVIDENCE_SCORE = 0.5
UNKNOWN_RECENCY_SCORE = 0.5
RECENCY_FLOOR = 0.3
RECENCY_HORIZON_YEARS = 10.0

STRATEGY_BY_QUERY_TYPE = {
    "emergency": "emergency_prioritized",
    "diagnosis": "diagnostic_focused",
    "treatment": "treatment_focused",
}


class ScoringWeights(BaseModel):
    similarity: float = 0.4
    clinical: float = 0.3
    recency: float = 0.15
    evidence: float = 0.15


class RetrievalSettings(BaseModel):
    """Tunable retrieval parameters."""
    similarity_threshold: float = Field(0.7, ge=-1.0, le=1.0)
    limit: int = Field(8, ge=1)
    oversample_factor: int = Field(2, ge=1)
    rerank: bool = True
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    embed_timeout: float = 15.0
    corpus_timeout: float = 15.0
    attempts: int = 3
    backoff: float = 1.0


class ChunkScorer(Protocol):
    def score(self, chunk: DocumentChunk, similarity: float, context: MedicalContext) -> float: ...


def evidence_score(level: Optional[str]) -> float:
    return EVIDENCE_SCORES.get(level or "medium", UNKNOWN_EVIDENCE_SCORE)


def recency_score(last_reviewed: Optional[date], today: date) -> float:
    if last_reviewed is None:
        return UNKNOWN_RECENCY_SCORE
    years = max(0.0, (today - last_reviewed).days / 365.25)
    return max(RECENCY_FLOOR, 1.0 - years / RECENCY_HORIZON_YEARS)


def clinical_relevance(chunk: DocumentChunk, context: MedicalContext) -> float:
    """
    How well a chunk's metadata matches the query context, in [0, 1].

    Base 0.4, up to 0.3 for specialty overlap, 0.2 for an exact age group match
    (0.1 for a compatible or unknown one) and 0.1 for an exact urgency match.
    """
    meta = chunk.metadata
    score = 0.4

    if context.specialties:
        chunk_specialties = {s.lower() for s in meta.medical_specialties}
        overlap = len(chunk_specialties & {s.lower() for s in context.specialties})
        score += 0.3 * overlap / len(context.specialties)
    else:
        score += 0.15

    chunk_ages = {a.lower() for a in meta.age_groups}
    if context.age_group is None or not chunk_ages:
        score += 0.1
    elif context.age_group in chunk_ages:
        score += 0.2
    elif chunk_ages & AGE_COMPATIBILITY.get(context.age_group, set()):
        score += 0.1

    if meta.urgency_level and meta.urgency_level == context.urgency_level:
        score += 0.1

    return min(1.0, score)


class RelevanceScorer:
    """Weighted combination of similarity, clinical relevance, recency and evidence."""

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        today: Callable[[], date] = date.today,
    ):
        self.weights = weights or ScoringWeights()
        self.today = today

    def score(self, chunk: DocumentChunk, similarity: float, context: MedicalContext) -> float:
        w = self.weights
        meta = chunk.metadata
        return (
            w.similarity * similarity
            + w.clinical * clinical_relevance(chunk, context)
            + w.recency * recency_score(meta.last_reviewed, self.today())
            + w.evidence * evidence_score(meta.evidence_level)
        )


def build_filters(context: MedicalContext) -> CorpusFilters:
    """Hard filters for a context. Urgency only narrows high and critical queries."""
    min_urgency = context.urgency_level if context.urgency_level in ("high", "critical") else None
    return CorpusFilters(
        specialties=set(context.specialties),
        age_groups=set(AGE_COMPATIBILITY.get(context.age_group, set())) if context.age_group else set(),
        min_urgency=min_urgency,
    )


def search_strategy_for(context: MedicalContext) -> str:
    if context.urgency_level == "critical":
        return "emergency_prioritized"
    return STRATEGY_BY_QUERY_TYPE.get(context.query_type, "general_medical")


class VectorRetriever:
    """Embeds the query, fetches filtered candidates and ranks them."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        corpus_store: CorpusStore,
        settings: Optional[RetrievalSettings] = None,
        scorer: Optional[ChunkScorer] = None,
        rerank_scorer: Optional[ChunkScorer] = None,
        cache: Optional[ResultCache[RetrievalResult]] = None,
    ):
        """
        Initialize the retriever.

        Args:
            embedding_client: Collaborator turning the query into a vector
            corpus_store: Collaborator returning candidate chunks
            settings: Retrieval parameters; defaults apply when omitted
            scorer: First-pass relevance scorer
            rerank_scorer: Scorer for the second pass; defaults to the first-pass scorer
            cache: Optional retrieval cache
        """
        self.embedding_client = embedding_client
        self.corpus_store = corpus_store
        self.settings = settings or RetrievalSettings()
        self.scorer = scorer or RelevanceScorer(self.settings.weights)
        self.rerank_scorer = rerank_scorer or self.scorer
        self.cache = cache

    def _cache_key(self, query: str, context: MedicalContext) -> str:
        return make_key(
            query,
            {
                "context": context.cache_fingerprint(),
                "settings": self.settings.model_dump(),
            },
        )

    async def _embed(self, query: str) -> List[float]:
        s = self.settings
        try:
            return await call_with_retries(
                lambda: self.embedding_client.embed(query),
                service="embedding",
                attempts=s.attempts,
                timeout=s.embed_timeout,
                backoff=s.backoff,
            )
        except CollaboratorError as e:
            raise EmbeddingError(f"Embedding service unavailable: {e}") from e

    async def _search(
        self, filters: CorpusFilters, limit: int, vector: List[float]
    ) -> List[DocumentChunk]:
        s = self.settings
        try:
            return await call_with_retries(
                lambda: self.corpus_store.search(filters, limit, query_vector=vector),
                service="corpus",
                attempts=s.attempts,
                timeout=s.corpus_timeout,
                backoff=s.backoff,
            )
        except CollaboratorError as e:
            raise CorpusError(f"Corpus store unavailable: {e}") from e

    def _score_candidates(
        self,
        candidates: List[DocumentChunk],
        vector: List[float],
        filters: CorpusFilters,
        context: MedicalContext,
    ) -> List[ScoredChunk]:
        scored: List[ScoredChunk] = []
        for chunk in candidates:
            if not filters.admits(chunk):
                logger.debug(f"Chunk {chunk.id} excluded by metadata filters")
                continue
            if not chunk.embedding:
                logger.warning(f"Chunk {chunk.id} has no embedding; skipping")
                continue
            try:
                similarity = cosine_similarity(vector, chunk.embedding)
            except ValueError as e:
                logger.warning(f"Chunk {chunk.id} skipped: {e}")
                continue
            if similarity < self.settings.similarity_threshold:
                continue
            scored.append(
                ScoredChunk(
                    chunk=chunk,
                    similarity=similarity,
                    relevance_score=self.scorer.score(chunk, similarity, context),
                )
            )
        return scored

    @log_timing
    async def retrieve(self, query: str, context: MedicalContext) -> RetrievalResult:
        """
        Retrieve ranked chunks for a query.

        Args:
            query: The query text to embed
            context: Medical context driving filters and clinical scoring

        Returns:
            A RetrievalResult with at most ``limit`` chunks

        Raises:
            RetrievalError: If the embedding client or corpus store fails after retries
        """
        s = self.settings
        cache_key = None
        if self.cache is not None:
            cache_key = self._cache_key(query, context)
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("Retrieval cache hit")
                return cached.model_copy(deep=True, update={"cache_hit": True})

        vector = await self._embed(query)
        filters = build_filters(context)
        window = s.limit * s.oversample_factor
        candidates = await self._search(filters, window, vector)

        # First pass: score, dedupe and sort, then keep the candidate window.
        ranked = RetrievalResult(
            chunks=self._score_candidates(candidates, vector, filters, context)
        ).chunks[:window]

        if s.rerank and ranked:
            ranked = RetrievalResult(
                chunks=[
                    ScoredChunk(
                        chunk=sc.chunk,
                        similarity=sc.similarity,
                        relevance_score=self.rerank_scorer.score(sc.chunk, sc.similarity, context),
                    )
                    for sc in ranked
                ]
            ).chunks

        result = RetrievalResult(
            chunks=ranked[:s.limit],
            search_strategy=search_strategy_for(context),
            reranked=s.rerank,
            filters_applied=filters.describe(),
            candidate_count=len(candidates),
        )
        logger.info(
            f"Retrieved {len(result)} of {len(candidates)} candidates "
            f"(strategy={result.search_strategy}, avg_similarity={result.average_similarity:.3f})"
        )

        if self.cache is not None and cache_key is not None:
            self.cache.set(cache_key, result.model_copy(deep=True))
        return result
