from typing import List, Literal, Optional, Set
from pydantic import BaseModel, ConfigDict, Field

AgeGroup = Literal["infant", "toddler", "child", "adolescent"]
UrgencyLevel = Literal["low", "medium", "high", "critical"]
ClinicalSetting = Literal["emergency", "acute_care", "specialty", "general"]
QueryType = Literal["diagnosis", "treatment", "information", "emergency", "education"]
EvidencePreference = Literal["high", "any"]

URGENCY_ORDER: List[str] = ["low", "medium", "high", "critical"]


class ChatMessage(BaseModel):
    """A single prior turn of the conversation passed to the primary generator."""
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class ContextOverrides(BaseModel):
    """Caller-supplied context. Any field set here wins over inferred values."""
    model_config = ConfigDict(frozen=True)

    age: Optional[str] = Field(
        None,
        description="An age group name ('infant', 'child', ...) or an age such as '5 years'.",
    )
    urgency: Optional[UrgencyLevel] = None
    setting: Optional[ClinicalSetting] = None


class EnhancementOptions(BaseModel):
    """Per-request control over the secondary enhancement pass."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    enhancement_type: Literal[
        "summarization", "simplification", "expansion", "clinical_reasoning"
    ] = "clinical_reasoning"
    target_audience: Literal["clinicians", "students", "patients"] = "clinicians"


class MedicalQuery(BaseModel):
    """An incoming question together with everything the caller attached to it."""
    model_config = ConfigDict(frozen=True)

    text: str
    overrides: ContextOverrides = Field(default_factory=ContextOverrides)
    history: List[ChatMessage] = Field(default_factory=list)
    enhancement: EnhancementOptions = Field(default_factory=EnhancementOptions)


class MedicalContext(BaseModel):
    """Structured medical context derived from a query."""
    age_group: Optional[AgeGroup] = None
    urgency_level: UrgencyLevel = "medium"
    specialties: Set[str] = Field(default_factory=set)
    clinical_setting: ClinicalSetting = "general"
    query_type: QueryType = "information"
    evidence_preference: EvidencePreference = "any"
    keywords: List[str] = Field(
        default_factory=list,
        description="Medical terms recognised in the query text.",
    )

    def cache_fingerprint(self) -> dict:
        """Stable, JSON-friendly view used when building cache keys."""
        data = self.model_dump()
        data["specialties"] = sorted(self.specialties)
        return data
