"""
Per-request workflow state and the tagged results each step produces.

A step never mutates the state directly. It returns one of the result types
below, and the workflow applies it. Each result type names exactly the fields
its step is responsible for.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import RAGError, WorkflowError
from ..models.answers import (
    ConfidenceBreakdown,
    GenerationResult,
    StepDiagnostic,
    ValidationResult,
)
from ..models.queries import MedicalContext, MedicalQuery
from ..models.retrieval import RetrievalResult


@dataclass
class WorkflowState:
    """Mutable accumulator owned by a single workflow execution."""
    query: MedicalQuery
    sanitized_query: Optional[str] = None
    context: Optional[MedicalContext] = None
    retrieval: Optional[RetrievalResult] = None
    context_blob: Optional[str] = None
    primary: Optional[GenerationResult] = None
    enhanced: Optional[GenerationResult] = None
    validation: Optional[ValidationResult] = None
    confidence: Optional[ConfidenceBreakdown] = None
    sources: List[str] = field(default_factory=list)
    final_answer: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    diagnostics: List[StepDiagnostic] = field(default_factory=list)
    visited: List[str] = field(default_factory=list)
    error: Optional[RAGError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def response_text(self) -> Optional[str]:
        """The enhanced response when there is one, else the primary response."""
        if self.enhanced is not None:
            return self.enhanced.text
        if self.primary is not None:
            return self.primary.text
        return None

    @property
    def usage(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for result in (self.primary, self.enhanced):
            if result is None:
                continue
            for key, value in result.usage.items():
                totals[key] = totals.get(key, 0) + value
        return totals

    def require(self, name: str):
        """Fetch a field an earlier step must have filled in."""
        value = getattr(self, name)
        if value is None:
            raise WorkflowError(f"Workflow state is missing '{name}'")
        return value


@dataclass(frozen=True)
class StepResult:
    """Base for all step results."""
    warnings: List[str] = field(default_factory=list)
    skipped: bool = False

    def apply(self, state: WorkflowState) -> None:
        state.warnings.extend(self.warnings)


@dataclass(frozen=True)
class InputValidated(StepResult):
    sanitized_query: str = ""

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.sanitized_query = self.sanitized_query


@dataclass(frozen=True)
class ContextAnalyzed(StepResult):
    context: Optional[MedicalContext] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.context = self.context


@dataclass(frozen=True)
class DocumentsRetrieved(StepResult):
    retrieval: Optional[RetrievalResult] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.retrieval = self.retrieval


@dataclass(frozen=True)
class PrimaryGenerated(StepResult):
    context_blob: str = ""
    primary: Optional[GenerationResult] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.context_blob = self.context_blob
        state.primary = self.primary


@dataclass(frozen=True)
class EnhancementApplied(StepResult):
    enhanced: Optional[GenerationResult] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.enhanced = self.enhanced


@dataclass(frozen=True)
class ValidationCompleted(StepResult):
    validation: Optional[ValidationResult] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.validation = self.validation


@dataclass(frozen=True)
class Finalized(StepResult):
    confidence: Optional[ConfidenceBreakdown] = None
    sources: List[str] = field(default_factory=list)
    final_answer: str = ""

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.confidence = self.confidence
        state.sources = list(self.sources)
        state.final_answer = self.final_answer


@dataclass(frozen=True)
class StepFailed(StepResult):
    error: Optional[RAGError] = None

    def apply(self, state: WorkflowState) -> None:
        super().apply(state)
        state.error = self.error
