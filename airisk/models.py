from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Closed vocabularies (persisted as their string values)
# ---------------------------------------------------------------------------


class RiskRating(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AssessmentStatus(enum.StrEnum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"


class CompositeRating(enum.StrEnum):
    LOW = "Low Risk"
    MEDIUM_LOW = "Medium-Low Risk"
    MEDIUM = "Medium Risk"
    MEDIUM_HIGH = "Medium-High Risk"
    HIGH = "High Risk"


class HistoryAction(enum.StrEnum):
    CREATED = "created"
    ANALYSIS_COMPLETED = "analysis_completed"
    ANALYSIS_FAILED = "analysis_failed"
    ANALYSIS_CLONED = "analysis_cloned"
    SCORE_OVERRIDE = "score_override"
    NOTES_UPDATED = "notes_updated"


class CompetitorType(enum.StrEnum):
    FOUNDATION_LAB = "foundation_lab"
    AI_NATIVE = "ai_native"
    INCUMBENT = "incumbent"


_RATING_VALUES = "('high', 'medium', 'low')"

# Storage slots on the assessment row; only 1-4 are populated by the current question set.
DOMAIN_SLOTS = (1, 2, 3, 4, 5)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    role: Mapped[str] = mapped_column(String(20), default="user")  # "admin" | "user"
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200, collation="NOCASE"), unique=True, nullable=False)
    sector: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    assessments: Mapped[list[Assessment]] = relationship("Assessment", back_populates="company")


class Assessment(Base):
    __tablename__ = "assessments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'analyzing', 'completed', 'error')", name="ck_assessment_status",
        ),
        Index("idx_assessments_company_status", "company_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=AssessmentStatus.PENDING)
    narrative: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain1_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    domain2_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    domain3_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    domain4_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    domain5_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    composite_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    composite_rating: Mapped[str | None] = mapped_column(String(30), nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_modified: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain_summaries: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON {domain_number: summary}
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    company: Mapped[Company] = relationship("Company", back_populates="assessments")
    domain_scores: Mapped[list[DomainScore]] = relationship(
        "DomainScore", back_populates="assessment", cascade="all, delete-orphan",
        order_by=lambda: [DomainScore.domain_number, DomainScore.question_key],
    )
    history: Mapped[list[AssessmentHistory]] = relationship(
        "AssessmentHistory", back_populates="assessment", cascade="all, delete-orphan",
    )
    portfolio_entries: Mapped[list[PortfolioEntry]] = relationship(
        "PortfolioEntry", back_populates="assessment", cascade="all, delete-orphan",
    )

    @property
    def domain_ratings(self) -> dict[int, str]:
        """Populated domain slots as ``{domain_number: rating}``."""
        ratings = {}
        for slot in DOMAIN_SLOTS:
            value = getattr(self, f"domain{slot}_rating")
            if value:
                ratings[slot] = value
        return ratings

    def set_domain_ratings(self, ratings: dict[int, str]) -> None:
        for slot in DOMAIN_SLOTS:
            setattr(self, f"domain{slot}_rating", ratings.get(slot))


class DomainScore(Base):
    __tablename__ = "domain_scores"
    __table_args__ = (
        CheckConstraint(f"ai_rating IN {_RATING_VALUES}", name="ck_domain_score_ai_rating"),
        CheckConstraint(f"ai_confidence IN {_RATING_VALUES}", name="ck_domain_score_ai_confidence"),
        CheckConstraint(
            f"user_rating IS NULL OR user_rating IN {_RATING_VALUES}", name="ck_domain_score_user_rating",
        ),
        CheckConstraint(f"effective_rating IN {_RATING_VALUES}", name="ck_domain_score_effective_rating"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    domain_number: Mapped[int] = mapped_column(Integer, nullable=False)
    question_key: Mapped[str] = mapped_column(String(100), nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    ai_rating: Mapped[str] = mapped_column(String(10), nullable=False)
    ai_reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ai_confidence: Mapped[str] = mapped_column(String(10), nullable=False, default=RiskRating.MEDIUM)
    user_rating: Mapped[str | None] = mapped_column(String(10), nullable=True)
    user_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    effective_rating: Mapped[str] = mapped_column(String(10), nullable=False)

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="domain_scores")


class AssessmentHistory(Base):
    __tablename__ = "assessment_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assessment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    field_changed: Mapped[str | None] = mapped_column(String(100), nullable=True)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="history")


class PortfolioEntry(Base):
    __tablename__ = "portfolio"
    __table_args__ = (UniqueConstraint("user_id", "assessment_id", name="uq_portfolio_user_assessment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assessment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("assessments.id", ondelete="CASCADE"), nullable=False,
    )
    weight: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=Decimal("0"))
    added_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assessment: Mapped[Assessment] = relationship("Assessment", back_populates="portfolio_entries")
    impacts: Mapped[list[NewsAlertImpact]] = relationship(
        "NewsAlertImpact", back_populates="portfolio_entry", cascade="all, delete-orphan",
    )


class NewsAlert(Base):
    __tablename__ = "news_alerts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    headline: Mapped[str] = mapped_column(String(500), nullable=False)
    source: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    published_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    competitor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    competitor_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    relevance_score: Mapped[int] = mapped_column(Integer, default=5)
    scanned_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    impacts: Mapped[list[NewsAlertImpact]] = relationship(
        "NewsAlertImpact", back_populates="alert", cascade="all, delete-orphan",
    )


class NewsAlertImpact(Base):
    __tablename__ = "news_alert_impacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(Integer, ForeignKey("news_alerts.id", ondelete="CASCADE"), nullable=False)
    portfolio_entry_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("portfolio.id", ondelete="CASCADE"), nullable=False,
    )
    impact_explanation: Mapped[str] = mapped_column(Text, default="")

    alert: Mapped[NewsAlert] = relationship("NewsAlert", back_populates="impacts")
    portfolio_entry: Mapped[PortfolioEntry] = relationship("PortfolioEntry", back_populates="impacts")


# Headlines are unique per user, case-insensitively.
Index("uq_news_alert_user_headline", NewsAlert.user_id, func.lower(NewsAlert.headline), unique=True)
