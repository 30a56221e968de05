from datetime import date
from typing import Dict, List, Literal, Optional, Self, Set
from pydantic import BaseModel, Field, model_validator

from .queries import URGENCY_ORDER

SearchStrategy = Literal[
    "emergency_prioritized", "diagnostic_focused", "treatment_focused", "general_medical"
]

# Which chunk age groups may answer a question about a given patient age group.
AGE_COMPATIBILITY: Dict[str, Set[str]] = {
    "infant": {"infant", "general"},
    "toddler": {"toddler", "child", "general"},
    "child": {"child", "toddler", "general"},
    "adolescent": {"adolescent", "child", "general"},
}


class ChunkMetadata(BaseModel):
    """Metadata attached to a corpus chunk by the ingestion process."""
    chapter: str = ""
    section: str = ""
    title: str = ""
    source: str = "Nelson Textbook of Pediatrics"
    medical_specialties: List[str] = Field(default_factory=list)
    age_groups: List[str] = Field(default_factory=list)
    urgency_level: Optional[str] = None
    evidence_level: Optional[str] = None
    last_reviewed: Optional[date] = None
    chunk_index: int = 0
    total_chunks: int = 1
    page: Optional[int] = None

    @property
    def label(self) -> str:
        """Human-readable citation label, e.g. 'Asthma - Management'."""
        parts = [p for p in (self.chapter, self.section) if p]
        if not parts and self.title:
            parts = [self.title]
        return " - ".join(parts) or self.source


class DocumentChunk(BaseModel):
    """A retrievable unit of the reference corpus."""
    id: str
    content: str
    embedding: Optional[List[float]] = None
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class ScoredChunk(BaseModel):
    """A chunk together with its vector similarity and combined relevance score."""
    chunk: DocumentChunk
    similarity: float
    relevance_score: float


class CorpusFilters(BaseModel):
    """Hard metadata filters derived from a MedicalContext."""
    specialties: Set[str] = Field(default_factory=set)
    age_groups: Set[str] = Field(
        default_factory=set,
        description="Chunk age groups acceptable for the patient's age group.",
    )
    min_urgency: Optional[str] = Field(
        None,
        description="Chunks must be at least this urgent. None disables the check.",
    )

    def is_empty(self) -> bool:
        return not self.specialties and not self.age_groups and self.min_urgency is None

    def admits(self, chunk: DocumentChunk) -> bool:
        """
        Check a chunk against every active filter.

        A chunk with no metadata for a dimension is not excluded on that dimension.
        """
        meta = chunk.metadata
        if self.specialties and meta.medical_specialties:
            chunk_specialties = {s.lower() for s in meta.medical_specialties}
            if not chunk_specialties & {s.lower() for s in self.specialties}:
                return False
        if self.age_groups and meta.age_groups:
            if not {a.lower() for a in meta.age_groups} & self.age_groups:
                return False
        if self.min_urgency and meta.urgency_level in URGENCY_ORDER:
            if URGENCY_ORDER.index(meta.urgency_level) < URGENCY_ORDER.index(
                self.min_urgency
            ):
                return False
        return True

    def describe(self) -> List[str]:
        applied = []
        if self.specialties:
            applied.append(f"specialty:{','.join(sorted(self.specialties))}")
        if self.age_groups:
            applied.append(f"age:{','.join(sorted(self.age_groups))}")
        if self.min_urgency:
            applied.append(f"urgency>={self.min_urgency}")
        return applied


class RetrievalResult(BaseModel):
    """Ranked retrieval output. Always sorted by relevance and free of duplicate ids."""
    chunks: List[ScoredChunk] = Field(default_factory=list)
    search_strategy: SearchStrategy = "general_medical"
    reranked: bool = False
    filters_applied: List[str] = Field(default_factory=list)
    candidate_count: int = 0
    cache_hit: bool = False

    @model_validator(mode="after")
    def check_order_and_uniqueness(self) -> Self:
        seen: Set[str] = set()
        unique: List[ScoredChunk] = []
        for scored in sorted(self.chunks, key=lambda s: s.relevance_score, reverse=True):
            if scored.chunk.id in seen:
                continue
            seen.add(scored.chunk.id)
            unique.append(scored)
        self.chunks = unique
        return self

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def average_similarity(self) -> float:
        if not self.chunks:
            return 0.0
        return sum(s.similarity for s in self.chunks) / len(self.chunks)

    @property
    def max_similarity(self) -> float:
        return max((s.similarity for s in self.chunks), default=0.0)

    @property
    def average_relevance(self) -> float:
        if not self.chunks:
            return 0.0
        return sum(s.relevance_score for s in self.chunks) / len(self.chunks)
