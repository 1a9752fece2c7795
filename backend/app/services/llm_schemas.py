"""
Expected shapes of model replies.

Every LLM reply is validated against one of these before use; a reply that
does not fit raises LlmResponseError and the calling stage takes its fallback.
"""

from __future__ import annotations

import datetime as dt
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from app.db.models import CitationType


def _to_str(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


def _to_str_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if isinstance(v, list):
        return [str(item) for item in v if item is not None and str(item).strip()]
    return v


CoercedStr = Annotated[str, BeforeValidator(_to_str)]
StrList = Annotated[List[str], BeforeValidator(_to_str_list)]


# ============================================================================
# Ingestion
# ============================================================================

class StructuredSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    section_number: CoercedStr = Field(..., min_length=1)
    title: str = ""
    content: str = Field(..., min_length=1)
    level: int = 1
    parent_section: Optional[CoercedStr] = None
    act_name: Optional[str] = None
    jurisdiction: Optional[str] = None
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    normalized_citation: Optional[str] = None
    cross_references: StrList = Field(default_factory=list)
    legal_concepts: StrList = Field(default_factory=list)
    definitions: Any = None


class SectionsPayload(BaseModel):
    sections: List[StructuredSection] = Field(..., min_length=1)


class CitationCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    citation_type: CitationType
    short_citation: str = Field(..., min_length=1, max_length=500)
    full_citation: Optional[str] = None
    neutral_citation: Optional[str] = None
    court: Optional[str] = None
    year: Optional[int] = None
    jurisdiction: Optional[str] = None
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    context: Optional[str] = None

    @field_validator("citation_type", mode="before")
    @classmethod
    def normalise_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower().replace(" ", "_").replace("-", "_")
            if v in ("case", "caselaw"):
                return "case_law"
            if v in ("act", "legislation"):
                return "statute"
        return v


class CitationsPayload(BaseModel):
    """Raw list; items are validated one by one so a single bad entry is dropped, not the reply."""
    citations: List[dict] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def wrap_bare_list(cls, v: Any) -> Any:
        if isinstance(v, list):
            return {"citations": v}
        return v

# ============================================================================
# Evidence intelligence
# ============================================================================

class LensOutput(BaseModel):
    model_config = ConfigDict(extra="allow")

    confidence: float = Field(0.7, ge=0.0, le=1.0)


class SynthesisOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    overall_confidence: float = Field(..., ge=0.0, le=1.0)
    legal_strength: int = Field(..., ge=0, le=100)
    case_impact: Any = None
    key_insights: List[Any] = Field(default_factory=list)
    recommendations: List[Any] = Field(default_factory=list)
    gaps: List[Any] = Field(default_factory=list)
    patterns: List[Any] = Field(default_factory=list)
    timeline_importance: Any = None

    @field_validator("legal_strength", mode="before")
    @classmethod
    def round_strength(cls, v: Any) -> Any:
        if isinstance(v, float):
            return int(round(v * 100)) if v <= 1.0 else int(round(v))
        return v


TIMELINE_CATEGORIES = {
    "incident", "communication", "legal_action", "medical", "financial",
    "threat", "violation", "escalation", "pattern_change", "other",
}


class TimelineEventOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: dt.date
    time: Optional[str] = None
    title: str = Field(..., min_length=1)
    description: str = ""
    category: str = "other"
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    legal_significance: Optional[str] = None
    evidence_type: Optional[str] = None
    witnesses: StrList = Field(default_factory=list)
    corroboration_needed: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, v: Any) -> str:
        value = str(v or "").strip().lower()
        return value if value in TIMELINE_CATEGORIES else "other"

    @field_validator("time", mode="before")
    @classmethod
    def short_time(cls, v: Any) -> Optional[str]:
        if not v:
            return None
        value = str(v).strip()
        return value[:5] if len(value) >= 5 and value[2] == ":" else None

    @field_validator("legal_significance", "corroboration_needed", mode="before")
    @classmethod
    def flatten_text(cls, v: Any) -> Any:
        if isinstance(v, list):
            return "; ".join(str(item) for item in v)
        return v


class TimelinePayload(BaseModel):
    events: List[dict] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def wrap_bare_list(cls, v: Any) -> Any:
        if isinstance(v, list):
            return {"events": v}
        return v
