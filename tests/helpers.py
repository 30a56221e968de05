"""
In-memory collaborators and builders shared by the test modules.
"""

import asyncio
from datetime import date
from typing import List, Optional, Sequence

from pediatric_rag.errors import CollaboratorError
from pediatric_rag.models.answers import GenerationResult
from pediatric_rag.models.retrieval import ChunkMetadata, DocumentChunk
from pediatric_rag.orch.steps import WorkflowComponents
from pediatric_rag.pipeline.medical_rag import MedicalRAG
from pediatric_rag.processors import (
    ResponseEnhancer,
    ResponseGenerator,
    RetrievalSettings,
    VectorRetriever,
)
from pediatric_rag.services.admission import AuditEvent
from pediatric_rag.storage.cache import ResultCache
from pediatric_rag.storage.vector_store import InMemoryCorpusStore

QUERY_VECTOR = [1.0, 0.0, 0.0]

PRIMARY_TEXT = (
    "Asthma in a 5 year old child is managed with a stepwise approach [Source 1]. "
    "Inhaled corticosteroids are the preferred controller therapy for persistent "
    "symptoms, and a short-acting beta agonist is used for quick relief [Source 2]. "
    "Review inhaler technique and adherence at every visit. This information is "
    "educational; please consult a qualified healthcare professional for decisions "
    "about an individual child."
)

ENHANCED_TEXT = PRIMARY_TEXT + " Key point for clinicians: reassess control every 1-3 months."


def make_chunk(
    chunk_id: str,
    embedding: Optional[List[float]] = None,
    content: Optional[str] = None,
    chapter: str = "Asthma",
    section: str = "Management",
    specialties: Sequence[str] = ("pulmonology",),
    age_groups: Sequence[str] = ("child",),
    urgency_level: Optional[str] = None,
    evidence_level: Optional[str] = "high",
    last_reviewed: Optional[date] = None,
) -> DocumentChunk:
    return DocumentChunk(
        id=chunk_id,
        content=content or f"Reference text for {chunk_id} about pediatric asthma care.",
        embedding=list(embedding) if embedding is not None else [1.0, 0.05, 0.0],
        metadata=ChunkMetadata(
            chapter=chapter,
            section=section,
            title=f"{chapter}: {section}",
            medical_specialties=list(specialties),
            age_groups=list(age_groups),
            urgency_level=urgency_level,
            evidence_level=evidence_level,
            last_reviewed=last_reviewed,
        ),
    )


def asthma_corpus() -> List[DocumentChunk]:
    return [
        make_chunk("asthma-1", [1.0, 0.05, 0.0], section="Management"),
        make_chunk("asthma-2", [0.95, 0.2, 0.0], section="Controller Therapy"),
        make_chunk("asthma-3", [0.9, 0.3, 0.1], section="Acute Exacerbations"),
        make_chunk("unrelated", [0.0, 1.0, 0.0], chapter="Fractures", section="Casting",
                   specialties=("orthopedics",)),
    ]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbeddingClient:
    """Returns a fixed vector, optionally failing the first few calls."""

    def __init__(self, vector: Sequence[float] = QUERY_VECTOR, failures: int = 0,
                 error: Optional[Exception] = None):
        self.vector = list(vector)
        self.failures = failures
        self.error = error or CollaboratorError("embedding offline", service="embedding")
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return list(self.vector)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]

    async def ping(self) -> None:
        await self.embed("ping")


class FailingCorpusStore:
    def __init__(self):
        self.calls = 0

    async def search(self, filters, limit, query_vector=None):
        self.calls += 1
        raise CollaboratorError("corpus offline", service="corpus")

    async def ping(self) -> None:
        raise CollaboratorError("corpus offline", service="corpus")


class FakeGenerationService:
    """Generation collaborator with scripted output, delay and failures."""

    def __init__(
        self,
        text: str = PRIMARY_TEXT,
        confidence: Optional[float] = 0.8,
        name: str = "fake_generation",
        timeout: float = 5.0,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.text = text
        self.confidence = confidence
        self.name = name
        self.timeout = timeout
        self.delay = delay
        self.error = error
        self.calls: List[dict] = []

    async def generate(self, system_prompt, context, history=None) -> GenerationResult:
        self.calls.append(
            {"system_prompt": system_prompt, "context": context, "history": list(history or [])}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(
            text=self.text,
            usage={"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
            confidence=self.confidence,
        )

    async def ping(self) -> None:
        if self.error is not None:
            raise self.error


class RecordingAuditSink:
    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    @property
    def actions(self) -> List[str]:
        return [e.action for e in self.events]


def build_retriever(corpus=None, embedding_client=None, cache=None, **settings) -> VectorRetriever:
    settings.setdefault("backoff", 0.0)
    return VectorRetriever(
        embedding_client=embedding_client or FakeEmbeddingClient(),
        corpus_store=corpus if corpus is not None else InMemoryCorpusStore(asthma_corpus()),
        settings=RetrievalSettings(**settings),
        cache=cache,
    )


def build_rag(
    corpus=None,
    embedding_client=None,
    primary: Optional[FakeGenerationService] = None,
    secondary: Optional[FakeGenerationService] = None,
    response_cache: Optional[ResultCache] = None,
    audit_sink=None,
    rate_limiter=None,
) -> MedicalRAG:
    retriever = build_retriever(corpus=corpus, embedding_client=embedding_client)
    primary = primary or FakeGenerationService(name="primary_generation")
    components = WorkflowComponents(
        retriever=retriever,
        generator=ResponseGenerator(primary, attempts=2, backoff=0.0),
        enhancer=ResponseEnhancer(secondary, attempts=1, backoff=0.0) if secondary else None,
    )
    return MedicalRAG(
        components,
        response_cache=response_cache,
        audit_sink=audit_sink,
        rate_limiter=rate_limiter,
    )
