"""Pipeline data model: plans, search results, sources, extractions and gaps."""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResearchMode(str, Enum):
    WEB = "web"
    RESEARCH = "research"
    DEEP = "deep"
    BRAINSTORM = "brainstorm"


class QueryCategory(str, Enum):
    SHOPPING = "shopping"
    TRAVEL = "travel"
    TECHNICAL = "technical"
    ACADEMIC = "academic"
    EXPLANATORY = "explanatory"
    FINANCE = "finance"
    GENERAL = "general"


class SuggestedDepth(str, Enum):
    STANDARD = "standard"
    DEEP = "deep"


class RouterResult(BaseModel):
    category: QueryCategory = QueryCategory.GENERAL
    suggested_depth: SuggestedDepth = SuggestedDepth.STANDARD


class PlanItem(BaseModel):
    aspect: str = Field(min_length=1)
    query: str = Field(min_length=1)

    @field_validator("aspect", "query", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value


class ResearchPlan(BaseModel):
    original_query: str
    query_type: QueryCategory = QueryCategory.GENERAL
    suggested_depth: SuggestedDepth = SuggestedDepth.STANDARD
    plan: list[PlanItem]
    refined_query: str | None = None
    search_intent: str | None = None


class RefinedQuery(BaseModel):
    refined_query: str
    search_intent: str | None = None


class SearchHit(BaseModel):
    title: str = ""
    url: str
    content: str = ""
    author: str | None = None
    published_date: str | None = None
    score: float = 0.0


class SearchImage(BaseModel):
    url: str
    alt_text: str = "Search result image"


class SearchResponse(BaseModel):
    results: list[SearchHit] = Field(default_factory=list)
    images: list[SearchImage] = Field(default_factory=list)
    provider: str = ""
    fallback_from: str | None = None
    fallback_reason: str | None = None


class AspectSearchResult(BaseModel):
    aspect: str
    query: str
    results: list[SearchHit] = Field(default_factory=list)
    images: list[SearchImage] = Field(default_factory=list)
    round: int = 1
    failed: bool = False
    cached: bool = False

    @property
    def urls(self) -> list[str]:
        return [hit.url for hit in self.results]


class Source(BaseModel):
    id: str
    index: int | None = None
    title: str
    url: str
    icon: str
    snippet: str = ""
    content: str = ""
    author: str | None = None
    published_date: str | None = None
    read_time: str
    time_ago: str


# --- Extraction ---


class _LLMShape(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExtractedClaim(_LLMShape):
    statement: str
    sources: list[int] = Field(default_factory=list)
    confidence: str = "established"


class ExtractedStatistic(_LLMShape):
    metric: str
    value: str
    source: int | None = None
    year: str | None = None

    @field_validator("value", "year", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        return str(value) if isinstance(value, (int, float)) else value


class ExtractedDefinition(_LLMShape):
    term: str
    definition: str
    source: int | None = None


class ExpertOpinion(_LLMShape):
    expert: str
    opinion: str
    source: int | None = None


class Contradiction(_LLMShape):
    claim1: str
    claim2: str
    sources: list[int] = Field(default_factory=list)


EXTRACTION_FAILED_INSIGHT = "Extraction failed - using raw data"


class ExtractedKnowledge(_LLMShape):
    aspect: str
    claims: list[ExtractedClaim] = Field(default_factory=list)
    statistics: list[ExtractedStatistic] = Field(default_factory=list)
    definitions: list[ExtractedDefinition] = Field(default_factory=list)
    expert_opinions: list[ExpertOpinion] = Field(default_factory=list, alias="expertOpinions")
    contradictions: list[Contradiction] = Field(default_factory=list)
    key_insight: str = Field(default="", alias="keyInsight")

    @classmethod
    def placeholder(cls, aspect: str) -> "ExtractedKnowledge":
        return cls(aspect=aspect, key_insight=EXTRACTION_FAILED_INSIGHT)

    @property
    def is_placeholder(self) -> bool:
        return self.key_insight == EXTRACTION_FAILED_INSIGHT and not self.claims


# --- Gap analysis ---


class GapType(str, Enum):
    MISSING_PERSPECTIVE = "missing_perspective"
    NEEDS_VERIFICATION = "needs_verification"
    MISSING_PRACTICAL = "missing_practical"
    NEEDS_RECENCY = "needs_recency"
    MISSING_COMPARISON = "missing_comparison"
    MISSING_EXPERT = "missing_expert"


class Gap(BaseModel):
    type: str = Field(min_length=1)
    gap: str = Field(min_length=1)
    query: str = Field(min_length=1)
    importance: Literal["high", "medium", "low"]


class GapAnalysis(BaseModel):
    gaps: list[Gap] = Field(default_factory=list)

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)


class BrainstormAngle(BaseModel):
    angle: str = Field(min_length=1)
    query: str = Field(min_length=1)
