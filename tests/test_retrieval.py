"""
Unit tests for vector retrieval and relevance scoring.

Tests cover:
- Ordering, de-duplication, threshold and limit
- Metadata filters (specialty, age compatibility, urgency)
- Re-ranking and the retrieval cache
- Collaborator failures surfacing as retrieval errors
"""

import unittest
from datetime import date

from pediatric_rag.errors import CorpusError, EmbeddingError
from pediatric_rag.models.queries import MedicalContext
from pediatric_rag.models.retrieval import CorpusFilters, RetrievalResult, ScoredChunk
from pediatric_rag.processors.retrieval import (
    build_filters,
    clinical_relevance,
    evidence_score,
    recency_score,
    search_strategy_for,
)
from pediatric_rag.storage.cache import ResultCache
from pediatric_rag.storage.vector_store import InMemoryCorpusStore, cosine_similarity

from tests.helpers import (
    FailingCorpusStore,
    FakeEmbeddingClient,
    asthma_corpus,
    build_retriever,
    make_chunk,
)


def child_asthma_context(**kwargs) -> MedicalContext:
    values = dict(age_group="child", specialties={"pulmonology"}, query_type="treatment")
    values.update(kwargs)
    return MedicalContext(**values)


class TestScoringFunctions(unittest.TestCase):
    """Test the individual relevance components."""

    def test_evidence_scores(self):
        """Evidence levels map to ordinal scores."""
        self.assertEqual(evidence_score("high"), 1.0)
        self.assertEqual(evidence_score("medium"), 0.7)
        self.assertEqual(evidence_score("low"), 0.4)
        self.assertEqual(evidence_score("expert_opinion"), 0.6)
        self.assertEqual(evidence_score(None), 0.7)
        self.assertEqual(evidence_score("anecdotal"), 0.5)

    def test_recency_decay(self):
        """Recency decays over ten years with a floor of 0.3."""
        today = date(2024, 1, 1)
        self.assertAlmostEqual(recency_score(date(2024, 1, 1), today), 1.0)
        self.assertAlmostEqual(recency_score(date(2019, 1, 1), today), 0.5, places=2)
        self.assertEqual(recency_score(date(1990, 1, 1), today), 0.3)
        self.assertEqual(recency_score(None, today), 0.5)

    def test_clinical_relevance(self):
        """Exact specialty, age and urgency matches give the full score."""
        context = child_asthma_context(urgency_level="high")
        exact = make_chunk("a", urgency_level="high")
        self.assertAlmostEqual(clinical_relevance(exact, context), 1.0)

        compatible_age = make_chunk("b", age_groups=("toddler",))
        self.assertAlmostEqual(clinical_relevance(compatible_age, context), 0.8)

        other_specialty = make_chunk("c", specialties=("cardiology",))
        self.assertAlmostEqual(clinical_relevance(other_specialty, context), 0.6)

    def test_cosine_similarity(self):
        self.assertAlmostEqual(cosine_similarity([1, 0], [1, 0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1, 0], [0, 1]), 0.0)
        self.assertEqual(cosine_similarity([0, 0], [1, 0]), 0.0)
        with self.assertRaises(ValueError):
            cosine_similarity([1, 0], [1, 0, 0])


class TestFilters(unittest.TestCase):
    """Test metadata filter construction and admission."""

    def test_age_compatibility(self):
        """Infant queries exclude child-only material."""
        filters = build_filters(MedicalContext(age_group="infant"))
        self.assertEqual(filters.age_groups, {"infant", "general"})
        self.assertFalse(filters.admits(make_chunk("x", age_groups=("child",))))
        self.assertTrue(filters.admits(make_chunk("y", age_groups=("general",))))

    def test_urgency_filter_only_for_urgent_queries(self):
        """Medium urgency queries are not narrowed by urgency."""
        self.assertIsNone(build_filters(MedicalContext(urgency_level="medium")).min_urgency)
        filters = build_filters(MedicalContext(urgency_level="critical"))
        self.assertEqual(filters.min_urgency, "critical")
        self.assertFalse(filters.admits(make_chunk("x", urgency_level="high")))
        self.assertTrue(filters.admits(make_chunk("y", urgency_level="critical")))

    def test_missing_metadata_passes(self):
        """A chunk without metadata on a dimension is not excluded by it."""
        filters = CorpusFilters(specialties={"neurology"}, age_groups={"infant"}, min_urgency="high")
        chunk = make_chunk("bare", specialties=(), age_groups=(), urgency_level=None)
        self.assertTrue(filters.admits(chunk))

    def test_search_strategy(self):
        self.assertEqual(search_strategy_for(MedicalContext(query_type="treatment")), "treatment_focused")
        self.assertEqual(search_strategy_for(MedicalContext(query_type="diagnosis")), "diagnostic_focused")
        self.assertEqual(
            search_strategy_for(MedicalContext(query_type="information", urgency_level="critical")),
            "emergency_prioritized",
        )
        self.assertEqual(search_strategy_for(MedicalContext()), "general_medical")


class TestRetrievalResult(unittest.TestCase):
    """Test the ordering and uniqueness invariant of RetrievalResult."""

    def test_sorted_and_unique(self):
        chunk_a = make_chunk("a")
        chunk_b = make_chunk("b")
        result = RetrievalResult(chunks=[
            ScoredChunk(chunk=chunk_a, similarity=0.8, relevance_score=0.5),
            ScoredChunk(chunk=chunk_b, similarity=0.9, relevance_score=0.9),
            ScoredChunk(chunk=chunk_a, similarity=0.8, relevance_score=0.7),
        ])
        self.assertEqual([s.chunk.id for s in result.chunks], ["b", "a"])
        self.assertEqual(result.chunks[1].relevance_score, 0.7)


class TestVectorRetriever(unittest.IsolatedAsyncioTestCase):
    """Test the retriever end to end against an in-memory corpus."""

    async def test_ranked_filtered_results(self):
        """Relevant chunks come back sorted; unrelated specialty is excluded."""
        retriever = build_retriever()
        result = await retriever.retrieve("asthma treatment", child_asthma_context())

        ids = [s.chunk.id for s in result.chunks]
        self.assertEqual(len(ids), 3)
        self.assertNotIn("unrelated", ids)
        scores = [s.relevance_score for s in result.chunks]
        self.assertEqual(scores, sorted(scores, reverse=True))
        self.assertEqual(result.search_strategy, "treatment_focused")
        self.assertTrue(result.reranked)
        self.assertFalse(result.cache_hit)

    async def test_duplicates_removed(self):
        """The same chunk returned twice by the store appears once."""
        corpus = asthma_corpus()
        store = InMemoryCorpusStore(corpus + [corpus[0]])
        result = await build_retriever(corpus=store).retrieve("asthma", child_asthma_context())
        ids = [s.chunk.id for s in result.chunks]
        self.assertEqual(len(ids), len(set(ids)))

    async def test_threshold_and_limit(self):
        """Chunks below the threshold are dropped and the result is truncated."""
        corpus = [make_chunk(f"c{i}", [1.0, 0.01 * i, 0.0]) for i in range(20)]
        corpus.append(make_chunk("far", [0.2, 1.0, 0.0]))
        retriever = build_retriever(corpus=InMemoryCorpusStore(corpus), limit=5)
        result = await retriever.retrieve("asthma", child_asthma_context())
        self.assertEqual(len(result), 5)
        self.assertTrue(all(s.similarity >= 0.7 for s in result.chunks))
        self.assertEqual(result.candidate_count, 10)

    async def test_chunks_without_embeddings_skipped(self):
        chunk = make_chunk("no-vector")
        chunk.embedding = None
        store = InMemoryCorpusStore([chunk, make_chunk("ok")])
        result = await build_retriever(corpus=store).retrieve("asthma", child_asthma_context())
        self.assertEqual([s.chunk.id for s in result.chunks], ["ok"])

    async def test_rerank_scorer_used(self):
        """The second pass re-scores the trimmed window and re-sorts."""
        class ReverseScorer:
            def __init__(self):
                self.calls = 0

            def score(self, chunk, similarity, context):
                self.calls += 1
                return 1.0 - similarity

        scorer = ReverseScorer()
        retriever = build_retriever()
        retriever.rerank_scorer = scorer
        result = await retriever.retrieve("asthma", child_asthma_context())
        self.assertEqual(scorer.calls, 3)
        self.assertEqual(result.chunks[0].chunk.id, "asthma-3")

    async def test_cache_hit(self):
        """A repeated retrieval is served from the cache without embedding again."""
        embedding = FakeEmbeddingClient()
        retriever = build_retriever(embedding_client=embedding, cache=ResultCache(300))
        first = await retriever.retrieve("asthma", child_asthma_context())
        second = await retriever.retrieve("  ASTHMA ", child_asthma_context())
        self.assertFalse(first.cache_hit)
        self.assertTrue(second.cache_hit)
        self.assertEqual(embedding.calls, 1)
        self.assertEqual(
            [s.chunk.id for s in first.chunks], [s.chunk.id for s in second.chunks]
        )

    async def test_embedding_retries_then_succeeds(self):
        embedding = FakeEmbeddingClient(failures=2)
        retriever = build_retriever(embedding_client=embedding, attempts=3)
        result = await retriever.retrieve("asthma", child_asthma_context())
        self.assertEqual(embedding.calls, 3)
        self.assertEqual(len(result), 3)

    async def test_embedding_failure_is_retrieval_error(self):
        embedding = FakeEmbeddingClient(failures=10)
        retriever = build_retriever(embedding_client=embedding, attempts=2)
        with self.assertRaises(EmbeddingError):
            await retriever.retrieve("asthma", child_asthma_context())
        self.assertEqual(embedding.calls, 2)

    async def test_corpus_failure_is_retrieval_error(self):
        store = FailingCorpusStore()
        retriever = build_retriever(corpus=store, attempts=2)
        with self.assertRaises(CorpusError):
            await retriever.retrieve("asthma", child_asthma_context())
        self.assertEqual(store.calls, 2)


if __name__ == "__main__":
    unittest.main()
