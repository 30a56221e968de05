"""
Data models for the pediatric RAG engine.

Each module in this package contains Pydantic models related to a specific domain:
- queries: The incoming query, caller overrides and the derived medical context
- retrieval: Corpus chunks, metadata filters and ranked retrieval results
- answers: Generation output, validation, confidence and the boundary result types
"""

from .queries import (
    URGENCY_ORDER,
    ChatMessage,
    ContextOverrides,
    EnhancementOptions,
    MedicalContext,
    MedicalQuery,
)
from .retrieval import (
    AGE_COMPATIBILITY,
    ChunkMetadata,
    CorpusFilters,
    DocumentChunk,
    RetrievalResult,
    ScoredChunk,
)
from .answers import (
    ConfidenceBreakdown,
    DraftAnswer,
    GenerationResult,
    HealthReport,
    ServiceStatus,
    StepDiagnostic,
    SubmitResult,
    ValidationResult,
    ValidationWarning,
)

__all__ = [
    # Query models
    "URGENCY_ORDER",
    "ChatMessage",
    "ContextOverrides",
    "EnhancementOptions",
    "MedicalContext",
    "MedicalQuery",

    # Retrieval models
    "AGE_COMPATIBILITY",
    "ChunkMetadata",
    "CorpusFilters",
    "DocumentChunk",
    "RetrievalResult",
    "ScoredChunk",

    # Answer models
    "ConfidenceBreakdown",
    "DraftAnswer",
    "GenerationResult",
    "HealthReport",
    "ServiceStatus",
    "StepDiagnostic",
    "SubmitResult",
    "ValidationResult",
    "ValidationWarning",
]
