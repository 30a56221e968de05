import logging
from typing import Optional

from ..models.answers import ConfidenceBreakdown, ValidationResult

logger = logging.getLogger("PediatricRAG")

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
NEUTRAL_BASE_CONFIDENCE = 0.5
NO_SOURCES_CAP = 0.3
FEW_DOCUMENTS = 3


def clamp(low: float, high: float, value: float) -> float:
    return max(low, min(high, value))


class ConfidenceScorer:
    """Combines generation self-confidence, retrieval quality and validation outcome."""

    def score(
        self,
        base_confidence: Optional[float],
        average_relevance: float,
        validation: Optional[ValidationResult],
        document_count: int,
        extra_warnings: int = 0,
    ) -> ConfidenceBreakdown:
        """
        Compute the final confidence.

        Args:
            base_confidence: Primary generation's self-reported confidence, if any
            average_relevance: Mean relevance score of the retrieved chunks
            validation: Clinical validation outcome
            document_count: Number of chunks retrieved
            extra_warnings: Workflow warnings not produced by clinical validation

        Returns:
            The score, always within [0.1, 0.95], with its contributing factors
        """
        base = NEUTRAL_BASE_CONFIDENCE if base_confidence is None else clamp(0.0, 1.0, base_confidence)
        validation_passed = validation.passed if validation is not None else True
        warning_count = (validation.warning_count if validation is not None else 0) + extra_warnings

        factors = {}
        confidence = clamp(MIN_CONFIDENCE, MAX_CONFIDENCE, base * 0.6 + average_relevance * 0.4)
        factors["blend"] = confidence

        if not validation_passed:
            confidence *= 0.8
            factors["validation_failed"] = 0.8

        warning_factor = max(0.0, 1 - 0.05 * warning_count)
        confidence *= warning_factor
        factors["warnings"] = warning_factor

        if document_count < FEW_DOCUMENTS:
            confidence *= 0.9
            factors["few_documents"] = 0.9

        if document_count == 0:
            confidence = min(confidence, NO_SOURCES_CAP)
            factors["no_sources_cap"] = NO_SOURCES_CAP

        confidence = clamp(MIN_CONFIDENCE, MAX_CONFIDENCE, confidence)
        logger.debug(f"Confidence {confidence:.3f} from factors {factors}")
        return ConfidenceBreakdown(
            score=confidence,
            base_confidence=base,
            average_relevance=average_relevance,
            validation_passed=validation_passed,
            warning_count=warning_count,
            document_count=document_count,
            factors=factors,
        )
