"""
The canonical pediatric RAG workflow.

Each step is a thin async function over a shared set of components. Fatal steps
let their RAGError escape (the workflow turns it into a StepFailed result);
non-fatal steps catch their own errors and report them as warnings.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..errors import EnhancementError
from ..processors.analysis import QueryAnalyzer
from ..processors.context import ContextBuilder, no_information_message
from ..processors.generation import ResponseEnhancer, ResponseGenerator
from ..processors.retrieval import VectorRetriever
from ..processors.scoring import ConfidenceScorer
from ..processors.validation import ClinicalValidator, InputValidator
from .state import (
    ContextAnalyzed,
    DocumentsRetrieved,
    EnhancementApplied,
    Finalized,
    InputValidated,
    PrimaryGenerated,
    ValidationCompleted,
    WorkflowState,
)
from .workflow import Workflow, WorkflowStep

logger = logging.getLogger("PediatricRAG")

STEP_ORDER = [
    "input_validation",
    "medical_analysis",
    "document_retrieval",
    "primary_generation",
    "response_enhancement",
    "clinical_validation",
    "quality_finalization",
]

MIN_SOURCES = 3
INSUFFICIENT_SOURCES = "insufficient sources"


@dataclass
class WorkflowComponents:
    """Everything the workflow steps need, constructed once and shared across requests."""
    retriever: VectorRetriever
    generator: ResponseGenerator
    enhancer: Optional[ResponseEnhancer] = None
    input_validator: InputValidator = field(default_factory=InputValidator)
    analyzer: QueryAnalyzer = field(default_factory=QueryAnalyzer)
    context_builder: ContextBuilder = field(default_factory=ContextBuilder)
    clinical_validator: ClinicalValidator = field(default_factory=ClinicalValidator)
    scorer: ConfidenceScorer = field(default_factory=ConfidenceScorer)
    min_sources: int = MIN_SOURCES


async def validate_input(components: WorkflowComponents, state: WorkflowState) -> InputValidated:
    sanitized = components.input_validator.validate(state.query.text)
    return InputValidated(sanitized_query=sanitized)


async def analyze_query(components: WorkflowComponents, state: WorkflowState) -> ContextAnalyzed:
    context = components.analyzer.analyze(
        state.require("sanitized_query"), state.query.overrides
    )
    return ContextAnalyzed(context=context)


async def retrieve_documents(
    components: WorkflowComponents, state: WorkflowState
) -> DocumentsRetrieved:
    retrieval = await components.retriever.retrieve(
        state.require("sanitized_query"), state.require("context")
    )
    warnings = []
    if len(retrieval) < components.min_sources:
        warnings.append(
            f"{INSUFFICIENT_SOURCES}: {len(retrieval)} relevant passages retrieved "
            f"(at least {components.min_sources} expected)"
        )
    return DocumentsRetrieved(retrieval=retrieval, warnings=warnings)


async def generate_primary(
    components: WorkflowComponents, state: WorkflowState
) -> PrimaryGenerated:
    context = state.require("context")
    context_blob = components.context_builder.build(state.require("retrieval"), context)
    primary = await components.generator.generate(
        state.require("sanitized_query"),
        context_blob,
        context,
        history=state.query.history,
    )
    return PrimaryGenerated(context_blob=context_blob, primary=primary)


async def enhance_response(
    components: WorkflowComponents, state: WorkflowState
) -> EnhancementApplied:
    options = state.query.enhancement
    enhancer = components.enhancer
    if enhancer is None or not enhancer.configured or not options.enabled:
        return EnhancementApplied(skipped=True)

    primary = state.require("primary")
    try:
        enhanced = await enhancer.enhance(
            state.require("sanitized_query"),
            primary.text,
            state.require("context_blob"),
            state.require("context"),
            options,
        )
    except EnhancementError as e:
        logger.warning(f"Enhancement failed, keeping primary response: {e.message}")
        return EnhancementApplied(
            warnings=["enhancement failed: primary response returned without refinement"]
        )
    return EnhancementApplied(enhanced=enhanced)


async def validate_response(
    components: WorkflowComponents, state: WorkflowState
) -> ValidationCompleted:
    retrieval = state.require("retrieval")
    validation = components.clinical_validator.validate(
        state.require("response_text"),
        state.require("context"),
        sources=components.context_builder.sources(retrieval),
    )
    return ValidationCompleted(validation=validation)


async def finalize(components: WorkflowComponents, state: WorkflowState) -> Finalized:
    retrieval = state.require("retrieval")
    context = state.require("context")
    primary = state.require("primary")

    # The document-count factor already covers a short retrieval.
    penalized = [w for w in state.warnings if not w.startswith(INSUFFICIENT_SOURCES)]
    confidence = components.scorer.score(
        base_confidence=primary.confidence,
        average_relevance=retrieval.average_relevance,
        validation=state.validation,
        document_count=len(retrieval),
        extra_warnings=len(penalized),
    )
    sources = components.context_builder.sources(retrieval)

    answer = state.require("response_text").strip()
    if not sources and "no relevant information found" not in answer.lower():
        answer = f"{answer}\n\n{no_information_message(context.query_type)}"

    return Finalized(confidence=confidence, sources=sources, final_answer=answer)


def build_workflow(components: WorkflowComponents) -> Workflow:
    """Wire the canonical seven-step workflow over the given components."""
    handlers = {
        "input_validation": validate_input,
        "medical_analysis": analyze_query,
        "document_retrieval": retrieve_documents,
        "primary_generation": generate_primary,
        "response_enhancement": enhance_response,
        "clinical_validation": validate_response,
        "quality_finalization": finalize,
    }
    steps = []
    for index, step_id in enumerate(STEP_ORDER):
        next_step = STEP_ORDER[index + 1] if index + 1 < len(STEP_ORDER) else None
        steps.append(
            WorkflowStep(
                step_id,
                functools.partial(handlers[step_id], components),
                next_step=next_step,
            )
        )
    return Workflow(steps, entry=STEP_ORDER[0])
