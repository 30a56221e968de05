import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from ..models.queries import ContextOverrides, MedicalContext

logger = logging.getLogger("PediatricRAG")

KEYWORDS_PATH = Path(__file__).resolve().parent.parent / "data" / "medical_keywords.yaml"

AGE_GROUP_NAMES = ("infant", "toddler", "child", "adolescent")

# "5 year old", "5-year-old", "5 yrs", "18 months", "3 weeks old"
_AGE_PATTERN = re.compile(
    r"\b(\d{1,2}(?:\.\d+)?)\s*[- ]?\s*(years?|yrs?|y/o|yo|months?|mos?|weeks?|wks?|days?)\b",
    re.IGNORECASE,
)


def age_group_for_years(years: float) -> Optional[str]:
    """Map an age in years to its age group (None above 18)."""
    if years < 1:
        return "infant"
    if years < 4:
        return "toddler"
    if years < 13:
        return "child"
    if years <= 18:
        return "adolescent"
    return None


def parse_age(text: str) -> Optional[str]:
    """
    Find an explicit age in the text and return its age group.

    Ages written as "N ... old" are preferred. Day and week durations only count
    when followed by "old", so "fever for 3 days" is not read as an age.
    """
    best: Optional[Tuple[bool, float]] = None
    for match in _AGE_PATTERN.finditer(text):
        unit = match.group(2).lower()
        is_old = text[match.end():match.end() + 6].lstrip(" -").lower().startswith("old")
        if unit[0] in "wd" and not is_old:
            continue
        value = float(match.group(1))
        if unit.startswith("m"):
            value /= 12
        elif unit.startswith("w"):
            value /= 52
        elif unit.startswith("d"):
            value /= 365
        if best is None or (is_old and not best[0]):
            best = (is_old, value)
        if is_old:
            break
    if best is None:
        return None
    return age_group_for_years(best[1])


def _compile_terms(terms: List[str]) -> re.Pattern:
    if not terms:
        return re.compile(r"(?!)")
    alternatives = "|".join(re.escape(t.lower()) for t in sorted(terms, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})")


class KeywordTable:
    """Compiled keyword lookup tables."""

    def __init__(self, data: Mapping[str, Any]):
        self.age_groups: List[Tuple[str, re.Pattern]] = [
            (group, _compile_terms(terms)) for group, terms in data.get("age_groups", {}).items()
        ]
        urgency = data.get("urgency", {})
        self.urgency: List[Tuple[str, re.Pattern]] = [
            (level, _compile_terms(urgency[level]))
            for level in ("critical", "high", "low")
            if urgency.get(level)
        ]
        self.query_types: List[Tuple[str, re.Pattern]] = [
            (query_type, _compile_terms(terms))
            for query_type, terms in data.get("query_types", {}).items()
        ]
        self.specialties: List[Tuple[str, re.Pattern]] = [
            (specialty, _compile_terms(terms))
            for specialty, terms in data.get("specialties", {}).items()
        ]
        self.medical_terms: List[str] = [t.lower() for t in data.get("medical_terms", [])]

    @classmethod
    def load(cls, path: str | Path = KEYWORDS_PATH) -> "KeywordTable":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls(data or {})


class QueryAnalyzer:
    """
    Derives a MedicalContext from query text using a configurable keyword table.

    The analysis is deterministic and never raises for any input text.
    """

    def __init__(self, keywords: Optional[Mapping[str, Any] | str | Path] = None):
        """
        Initialize the analyzer.

        Args:
            keywords: A keyword mapping, a path to a YAML keyword file, or None
                for the bundled table
        """
        if keywords is None:
            self.table = KeywordTable.load()
        elif isinstance(keywords, (str, Path)):
            self.table = KeywordTable.load(keywords)
        else:
            self.table = KeywordTable(keywords)

    @staticmethod
    def _first_match(text: str, patterns: List[Tuple[str, re.Pattern]]) -> Optional[str]:
        for label, pattern in patterns:
            if pattern.search(text):
                return label
        return None

    def detect_age_group(self, text: str) -> Optional[str]:
        # An explicit age is more specific than any age word.
        return parse_age(text) or self._first_match(text, self.table.age_groups)

    def detect_urgency(self, text: str) -> str:
        return self._first_match(text, self.table.urgency) or "medium"

    def detect_query_type(self, text: str) -> str:
        return self._first_match(text, self.table.query_types) or "information"

    def detect_specialties(self, text: str) -> set[str]:
        return {name for name, pattern in self.table.specialties if pattern.search(text)}

    def extract_keywords(self, text: str) -> List[str]:
        return [term for term in self.table.medical_terms if term in text]

    @staticmethod
    def _resolve_age_override(age: str) -> Optional[str]:
        value = age.strip().lower()
        if value in AGE_GROUP_NAMES:
            return value
        parsed = parse_age(value)
        if parsed:
            return parsed
        try:
            return age_group_for_years(float(value))
        except ValueError:
            logger.warning(f"Ignoring unrecognised age override '{age}'")
            return None

    @staticmethod
    def derive_setting(urgency: str, specialties: set[str]) -> str:
        if urgency == "critical":
            return "emergency"
        if urgency == "high":
            return "acute_care"
        if specialties:
            return "specialty"
        return "general"

    def analyze(self, text: str, overrides: Optional[ContextOverrides] = None) -> MedicalContext:
        """
        Build the MedicalContext for a query.

        Args:
            text: The raw query text
            overrides: Caller-supplied values; any that are set replace inferred ones

        Returns:
            The derived MedicalContext
        """
        lowered = (text or "").lower()
        overrides = overrides or ContextOverrides()

        age_group = self.detect_age_group(lowered)
        urgency = self.detect_urgency(lowered)
        query_type = self.detect_query_type(lowered)
        specialties = self.detect_specialties(lowered)

        if overrides.age is not None:
            age_group = self._resolve_age_override(overrides.age)
        if overrides.urgency is not None:
            urgency = overrides.urgency

        setting = overrides.setting or self.derive_setting(urgency, specialties)
        evidence = "high" if query_type in ("treatment", "emergency") else "any"

        context = MedicalContext(
            age_group=age_group,
            urgency_level=urgency,
            specialties=specialties,
            clinical_setting=setting,
            query_type=query_type,
            evidence_preference=evidence,
            keywords=self.extract_keywords(lowered),
        )
        logger.info(
            f"Query analysis: type={context.query_type}, age={context.age_group}, "
            f"urgency={context.urgency_level}, setting={context.clinical_setting}, "
            f"specialties={sorted(context.specialties)}"
        )
        return context
