from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from .queries import MedicalContext


class DraftAnswer(BaseModel):
    """Structured output requested from the primary generation collaborator."""
    answer: str = Field(
        description="The full answer in markdown, citing sources as [Source N]."
    )
    confidence: float = Field(
        ge=0.0,
        le=1.0,
        description="Your own confidence (0-1) that the answer is fully supported by the provided sources.",
    )


class GenerationResult(BaseModel):
    """What a generation collaborator returns."""
    text: str
    usage: Dict[str, int] = Field(default_factory=dict)
    confidence: Optional[float] = Field(
        None, description="Self-reported confidence, when the collaborator provides one."
    )
    model: Optional[str] = None


class ValidationWarning(BaseModel):
    """A single failed clinical validation check."""
    code: str
    message: str


class ValidationResult(BaseModel):
    passed: bool
    warnings: List[ValidationWarning] = Field(default_factory=list)
    checks_run: List[str] = Field(default_factory=list)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class ConfidenceBreakdown(BaseModel):
    """The final confidence score and the factors that produced it."""
    score: float
    base_confidence: float
    average_relevance: float
    validation_passed: bool
    warning_count: int
    document_count: int
    factors: Dict[str, float] = Field(default_factory=dict)


class StepDiagnostic(BaseModel):
    """Timing and outcome of one workflow step."""
    step_id: str
    duration_ms: float
    success: bool
    skipped: bool = False
    error: Optional[str] = None


class SubmitResult(BaseModel):
    """Everything returned to the caller of MedicalRAG.submit."""
    answer: str
    sources: List[str] = Field(default_factory=list)
    confidence: float
    processing_time_ms: float
    step_diagnostics: List[StepDiagnostic] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cache_hit: bool = False
    context: Optional[MedicalContext] = None
    validation: Optional[ValidationResult] = None
    search_strategy: Optional[str] = None
    usage: Dict[str, int] = Field(default_factory=dict)


class ServiceStatus(BaseModel):
    status: Literal["ok", "error", "not_configured"]
    detail: Optional[str] = None
    latency_ms: Optional[float] = None


class HealthReport(BaseModel):
    embedding: ServiceStatus
    corpus: ServiceStatus
    primary_generation: ServiceStatus
    secondary_generation: ServiceStatus

    @property
    def status(self) -> Literal["healthy", "degraded"]:
        # The secondary collaborator is optional; its absence is not a degradation.
        required = (self.embedding, self.corpus, self.primary_generation)
        if any(s.status != "ok" for s in required):
            return "degraded"
        if self.secondary_generation.status == "error":
            return "degraded"
        return "healthy"
