"""Pydantic request/response schemas for the AIRisk API."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

Rating = Literal["high", "medium", "low"]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class AssessmentCreate(BaseModel):
    company_name: str = Field(min_length=1, max_length=200)
    sector: str | None = None
    description: str | None = None

    @field_validator("company_name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name must not be blank")
        return v


class ScoreOverride(BaseModel):
    user_rating: Rating | None
    user_reasoning: str | None = None


class NotesUpdate(BaseModel):
    notes: str | None


class AnalysisRequest(BaseModel):
    assessment_id: int


class BatchAnalysisRequest(BaseModel):
    companies: list[str] = Field(min_length=1, max_length=20)
    sector: str | None = None


class PortfolioBatchRequest(BaseModel):
    companies: list[str] = Field(default_factory=list, max_length=75)
    existing_assessment_ids: list[int] = Field(default_factory=list)
    sector: str | None = None


class PortfolioAdd(BaseModel):
    assessment_ids: list[int] = Field(min_length=1)


class WeightItem(BaseModel):
    id: int
    weight: float


class WeightsUpdate(BaseModel):
    weights: list[WeightItem]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class AssessmentCreated(BaseModel):
    company_id: int
    assessment_id: int


class AssessmentOut(BaseModel):
    id: int
    company_id: int
    user_id: int
    company_name: str
    company_sector: str | None = None
    status: str
    narrative: str | None = None
    domain1_rating: str | None = None
    domain2_rating: str | None = None
    domain3_rating: str | None = None
    domain4_rating: str | None = None
    domain5_rating: str | None = None
    composite_score: float | None = None
    composite_rating: str | None = None
    ai_model: str | None = None
    user_modified: bool = False
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class DomainScoreOut(BaseModel):
    id: int
    assessment_id: int
    domain_number: int
    question_key: str
    question_text: str
    ai_rating: str
    ai_reasoning: str
    ai_confidence: str
    user_rating: str | None = None
    user_reasoning: str | None = None
    effective_rating: str


class HistoryOut(BaseModel):
    id: int
    action: str
    field_changed: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    timestamp: str | None = None


class AssessmentDetail(AssessmentOut):
    company_description: str | None = None
    domain_summaries: dict[int, str] = {}
    domain_scores: list[DomainScoreOut] = []
    history: list[HistoryOut] = []


class OverrideResult(BaseModel):
    score: DomainScoreOut
    composite_score: float
    composite_rating: str
    domain_ratings: dict[int, str]


class PortfolioEntryOut(BaseModel):
    id: int
    assessment_id: int
    weight: float
    added_at: str | None = None
    company_name: str
    company_sector: str | None = None
    composite_score: float | None = None
    composite_rating: str | None = None
    domain1_rating: str | None = None
    domain2_rating: str | None = None
    domain3_rating: str | None = None
    domain4_rating: str | None = None
    updated_at: str | None = None


class StatsOut(BaseModel):
    total_companies: int
    total_assessments: int
    avg_composite_score: float
    high_risk_count: int
    medium_risk_count: int
    low_risk_count: int
    high_risk_weight: float
    medium_risk_weight: float
    low_risk_weight: float


class RiskDistributionOut(BaseModel):
    rating: str
    count: int


class DomainBreakdownOut(BaseModel):
    domain_number: int
    domain: str
    high: int
    medium: int
    low: int


class SectorBreakdownOut(BaseModel):
    sector: str
    avg_score: float
    count: int


class ImpactOut(BaseModel):
    portfolio_entry_id: int
    company_name: str
    impact_explanation: str


class NewsAlertOut(BaseModel):
    id: int
    headline: str
    source: str | None = None
    source_url: str | None = None
    published_date: str | None = None
    summary: str
    competitor: str | None = None
    competitor_type: str | None = None
    relevance_score: int
    scanned_at: str | None = None
    impacts: list[ImpactOut] = []


class NewsStatusOut(BaseModel):
    last_scanned_at: str | None = None
    alert_count: int
    is_stale: bool


class CompanyImportOut(BaseModel):
    companies: list[str]
    total_rows: int
    duplicates_skipped: int
    truncated: bool


class BackfillOut(BaseModel):
    updated: int
    total: int
    message: str | None = None


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    name: str = ""
    role: Literal["user", "admin"] = "user"


class UserOut(BaseModel):
    id: int
    username: str
    name: str
    role: str
    created_at: str | None = None
