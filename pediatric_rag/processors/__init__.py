"""
Processor components for the pediatric RAG engine.

Each module in this package contains processors responsible for a specific part of the pipeline:
- base: Prompt templates, the timing decorator and the generation processor base class
- analysis: Keyword-driven query analysis into a MedicalContext
- retrieval: Vector retrieval, metadata filtering and relevance re-ranking
- context: Tiered, provenance-annotated context assembly
- generation: Primary answer generation and the optional enhancement pass
- validation: Input screening and clinical answer validation
- scoring: Confidence scoring
"""

from .base import BaseProcessor, PromptManager, PromptRenderError, log_timing
from .analysis import QueryAnalyzer
from .retrieval import RelevanceScorer, RetrievalSettings, ScoringWeights, VectorRetriever
from .context import ContextBuilder
from .generation import ResponseEnhancer, ResponseGenerator
from .validation import ClinicalValidator, InputValidator
from .scoring import ConfidenceScorer

__all__ = [
    # Base classes
    "BaseProcessor",
    "PromptManager",
    "PromptRenderError",
    "log_timing",

    # Analysis and retrieval
    "QueryAnalyzer",
    "RelevanceScorer",
    "RetrievalSettings",
    "ScoringWeights",
    "VectorRetriever",
    "ContextBuilder",

    # Generation
    "ResponseEnhancer",
    "ResponseGenerator",

    # Validation and scoring
    "ClinicalValidator",
    "InputValidator",
    "ConfidenceScorer",
]
