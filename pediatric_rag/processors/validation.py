import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple

from fuzzywuzzy import fuzz

from ..errors import ValidationError
from ..models.answers import ValidationResult, ValidationWarning
from ..models.queries import MedicalContext

logger = logging.getLogger("PediatricRAG")

MAX_QUERY_LENGTH = 5000

PHI_PATTERNS: List[Tuple[str, re.Pattern]] = [
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("card_number", re.compile(r"\b\d{4}\s?\d{4}\s?\d{4}\s?\d{4}\b")),
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("phone", re.compile(r"\b\d{3}-\d{3}-\d{4}\b")),
    ("date_of_birth", re.compile(r"\b\d{2}/\d{2}/\d{4}\b")),
]

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
# Control characters other than tab, newline and carriage return, plus lone surrogates.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ud800-\udfff]")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")

ATTRIBUTION_PATTERN = re.compile(
    r"\[source\s*\d+\]|\bnelson\b|\baccording to\b|\bsources?:", re.IGNORECASE
)
DISCLAIMER_PATTERN = re.compile(
    r"\bconsult\w*|\bhealth\s*care (?:professional|provider)|\bpediatrician|\bphysician"
    r"|\bmedical advice\b|\bnot a substitute\b|\bdoes not replace\b",
    re.IGNORECASE,
)
ESCALATION_PATTERN = re.compile(
    r"\b911\b|\bemergency (?:department|room|services|care|medical services)\b"
    r"|\bseek (?:immediate|urgent|emergency)|\bimmediately\b|\bambulance\b|\bcall emergency\b",
    re.IGNORECASE,
)
DOSING_PATTERN = re.compile(
    r"\b\d+(?:\.\d+)?\s*(?:mg|mcg|µg|g|ml|units?|iu)(?:/kg)?\b|\bdos(?:e|es|ing|age)\b",
    re.IGNORECASE,
)
DOSE_VERIFICATION_PATTERN = re.compile(
    r"\bverif\w*|\bconfirm\w*|\bdouble[- ]check\w*|\bpharmacist\b|\bformular\w*",
    re.IGNORECASE,
)


class InputValidator:
    """Rejects oversize, empty or PHI-bearing queries and strips script content."""

    def __init__(self, max_length: int = MAX_QUERY_LENGTH):
        self.max_length = max_length

    @staticmethod
    def sanitize(text: str) -> str:
        text = _SCRIPT_TAG.sub("", text)
        text = _JS_PROTOCOL.sub("", text)
        text = _CONTROL_CHARS.sub("", text)
        return text.strip()

    @staticmethod
    def find_phi(text: str) -> List[str]:
        """Names of the PHI patterns present in the text."""
        return [name for name, pattern in PHI_PATTERNS if pattern.search(text)]

    def validate(self, text: str) -> str:
        """
        Validate a raw query.

        Returns:
            The sanitized query text

        Raises:
            ValidationError: For empty, oversize or PHI-bearing input
        """
        if text is None or not text.strip():
            raise ValidationError("Query is empty")
        if len(text) > self.max_length:
            raise ValidationError(
                f"Query exceeds maximum length of {self.max_length} characters"
            )
        phi = self.find_phi(text)
        if phi:
            # The matched values are never logged.
            logger.warning(f"Query rejected: potential PHI detected ({', '.join(phi)})")
            raise ValidationError(
                "Query contains potential personally identifiable information (PHI)"
            )
        sanitized = self.sanitize(text)
        if not sanitized:
            raise ValidationError("Query is empty after sanitization")
        return sanitized


class ClinicalValidator:
    """
    Runs a fixed battery of safety and format checks against an answer.

    Failing checks only produce warnings; the answer is never blocked.
    """

    def __init__(
        self,
        min_length: int = 200,
        max_warnings: int = 3,
        fuzzy_threshold: int = 85,
    ):
        """
        Initialize the validator.

        Args:
            min_length: Minimum answer length in characters
            max_warnings: Validation passes while the warning count stays below this
            fuzzy_threshold: Minimum fuzzy score for a source label to count as cited
        """
        self.min_length = min_length
        self.max_warnings = max_warnings
        self.fuzzy_threshold = fuzzy_threshold
        self.checks: List[Tuple[str, Callable[..., Optional[ValidationWarning]]]] = [
            ("length", self._check_length),
            ("source_attribution", self._check_attribution),
            ("professional_disclaimer", self._check_disclaimer),
            ("emergency_escalation", self._check_escalation),
            ("dosing_verification", self._check_dosing),
        ]

    def _check_length(self, answer, context, sources) -> Optional[ValidationWarning]:
        if len(answer.strip()) < self.min_length:
            return ValidationWarning(
                code="response_too_short",
                message=f"Response is shorter than {self.min_length} characters",
            )
        return None

    def _mentions_source(self, answer: str, sources: Sequence[str]) -> bool:
        lowered = answer.lower()
        # Fuzzy matching runs per sentence so long answers do not dilute the score.
        sentences = [s for s in _SENTENCE_SPLIT.split(lowered) if s.strip()]
        for label in sources:
            if not label:
                continue
            label = label.lower()
            if label in lowered:
                return True
            if any(
                len(s) >= len(label) and fuzz.partial_ratio(label, s) >= self.fuzzy_threshold
                for s in sentences
            ):
                return True
        return False

    def _check_attribution(self, answer, context, sources) -> Optional[ValidationWarning]:
        if ATTRIBUTION_PATTERN.search(answer) or self._mentions_source(answer, sources):
            return None
        return ValidationWarning(
            code="missing_source_attribution",
            message="Response does not attribute its content to a reference source",
        )

    def _check_disclaimer(self, answer, context, sources) -> Optional[ValidationWarning]:
        if context.clinical_setting == "specialty" or DISCLAIMER_PATTERN.search(answer):
            return None
        return ValidationWarning(
            code="missing_professional_disclaimer",
            message="Response lacks advice to consult a healthcare professional",
        )

    def _check_escalation(self, answer, context, sources) -> Optional[ValidationWarning]:
        if context.urgency_level != "critical" or ESCALATION_PATTERN.search(answer):
            return None
        return ValidationWarning(
            code="missing_emergency_escalation",
            message="Critical-urgency response lacks emergency escalation guidance",
        )

    def _check_dosing(self, answer, context, sources) -> Optional[ValidationWarning]:
        if not DOSING_PATTERN.search(answer) or DOSE_VERIFICATION_PATTERN.search(answer):
            return None
        return ValidationWarning(
            code="unverified_dosing",
            message="Response mentions dosing without advising dose verification",
        )

    def validate(
        self,
        answer: str,
        context: MedicalContext,
        sources: Optional[Sequence[str]] = None,
    ) -> ValidationResult:
        """
        Validate an answer.

        Args:
            answer: The (possibly enhanced) answer text
            context: The query's medical context
            sources: Citation labels of the retrieved chunks

        Returns:
            A ValidationResult with one warning per failed check
        """
        sources = list(sources or [])
        warnings: List[ValidationWarning] = []
        for _, check in self.checks:
            warning = check(answer, context, sources)
            if warning is not None:
                warnings.append(warning)

        passed = len(warnings) < self.max_warnings
        if warnings:
            logger.info(
                f"Clinical validation {'passed' if passed else 'failed'} with warnings: "
                f"{', '.join(w.code for w in warnings)}"
            )
        return ValidationResult(
            passed=passed,
            warnings=warnings,
            checks_run=[name for name, _ in self.checks],
        )
