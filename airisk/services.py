"""Shared business logic for the AIRisk API and MCP server.

All functions take an explicit ``user_id`` for owner-scoped data. Mutating
operations commit their own transaction unless noted otherwise.
"""
from __future__ import annotations

import logging
from collections import Counter
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from airisk import portfolio
from airisk.analyzer import LLMClient, describe_company
from airisk.domains import DOMAINS
from airisk.errors import ConflictError, InvalidInputError, NotFoundError
from airisk.models import (
    Assessment,
    AssessmentHistory,
    AssessmentStatus,
    Company,
    CompositeRating,
    DomainScore,
    HistoryAction,
    RiskRating,
    User,
)
from airisk.scoring import Recalculation, recalculate_assessment
from airisk.utils import json_parse

log = logging.getLogger(__name__)

# Highest risk first
COMPOSITE_ORDER = (
    CompositeRating.HIGH,
    CompositeRating.MEDIUM_HIGH,
    CompositeRating.MEDIUM,
    CompositeRating.MEDIUM_LOW,
    CompositeRating.LOW,
)

RISK_BUCKETS = {
    CompositeRating.HIGH: "high",
    CompositeRating.MEDIUM_HIGH: "high",
    CompositeRating.MEDIUM: "medium",
    CompositeRating.MEDIUM_LOW: "low",
    CompositeRating.LOW: "low",
}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def assessment_summary(a: Assessment) -> dict:
    return {
        "id": a.id, "company_id": a.company_id, "user_id": a.user_id,
        "company_name": a.company.name, "company_sector": a.company.sector,
        "status": a.status, "narrative": a.narrative,
        "domain1_rating": a.domain1_rating, "domain2_rating": a.domain2_rating,
        "domain3_rating": a.domain3_rating, "domain4_rating": a.domain4_rating,
        "domain5_rating": a.domain5_rating,
        "composite_score": a.composite_score, "composite_rating": a.composite_rating,
        "ai_model": a.ai_model, "user_modified": bool(a.user_modified), "notes": a.notes,
        "created_at": _iso(a.created_at), "updated_at": _iso(a.updated_at),
    }


def score_dict(s: DomainScore) -> dict:
    return {
        "id": s.id, "assessment_id": s.assessment_id, "domain_number": s.domain_number,
        "question_key": s.question_key, "question_text": s.question_text,
        "ai_rating": s.ai_rating, "ai_reasoning": s.ai_reasoning, "ai_confidence": s.ai_confidence,
        "user_rating": s.user_rating, "user_reasoning": s.user_reasoning,
        "effective_rating": s.effective_rating,
    }


def history_dict(h: AssessmentHistory) -> dict:
    return {
        "id": h.id, "action": h.action, "field_changed": h.field_changed,
        "old_value": h.old_value, "new_value": h.new_value, "timestamp": _iso(h.timestamp),
    }


def assessment_detail(a: Assessment) -> dict:
    base = assessment_summary(a)
    base["company_description"] = a.company.description
    summaries = json_parse(a.domain_summaries, {})
    base["domain_summaries"] = {int(k): v for k, v in summaries.items()}
    base["domain_scores"] = [score_dict(s) for s in a.domain_scores]
    base["history"] = [
        history_dict(h) for h in sorted(a.history, key=lambda h: (h.timestamp, h.id), reverse=True)
    ]
    return base


# ---------------------------------------------------------------------------
# Companies, assessments, history
# ---------------------------------------------------------------------------


def find_company(session: Session, name: str) -> Company | None:
    return session.execute(
        select(Company).where(func.lower(Company.name) == name.strip().lower())
    ).scalars().first()


def get_or_create_company(
    session: Session, name: str, sector: str | None = None, description: str | None = None,
) -> Company:
    """Case-insensitive lookup; a supplied sector overrides, a description only fills a gap."""
    name = name.strip()
    if not name:
        raise InvalidInputError("Company name is required")
    company = find_company(session, name)
    if company is None:
        company = Company(name=name, sector=sector or None, description=description or None)
        session.add(company)
        session.flush()
        return company
    if sector:
        company.sector = sector
    if description and not company.description:
        company.description = description
    return company


def add_history(
    session: Session, assessment_id: int, action: HistoryAction, *,
    field_changed: str | None = None, old_value: str | None = None, new_value: str | None = None,
) -> AssessmentHistory:
    entry = AssessmentHistory(
        assessment_id=assessment_id, action=action,
        field_changed=field_changed, old_value=old_value, new_value=new_value,
    )
    session.add(entry)
    return entry


def create_assessment(
    session: Session, user_id: int, company_name: str, sector: str | None = None,
    description: str | None = None, status: AssessmentStatus = AssessmentStatus.PENDING,
) -> Assessment:
    """Company (lazily) plus a fresh assessment with a ``created`` history row (caller must commit)."""
    company = get_or_create_company(session, company_name, sector, description)
    assessment = Assessment(company_id=company.id, user_id=user_id, status=status)
    assessment.company = company
    session.add(assessment)
    session.flush()
    add_history(session, assessment.id, HistoryAction.CREATED)
    return assessment


def get_owned_assessment(session: Session, assessment_id: int, user_id: int) -> Assessment:
    """Fetch an assessment owned by *user_id*; missing and foreign ids are indistinguishable."""
    assessment = session.execute(
        select(Assessment).where(Assessment.id == assessment_id, Assessment.user_id == user_id)
    ).scalars().first()
    if assessment is None:
        raise NotFoundError("Assessment not found")
    return assessment


def list_assessments(
    session: Session, user_id: int, *, status: str | None = None, sector: str | None = None,
    search: str | None = None, sort: str = "updated_at", order: str = "desc",
) -> list[dict]:
    query = (
        select(Assessment)
        .join(Company, Assessment.company_id == Company.id)
        .where(Assessment.user_id == user_id)
        .options(selectinload(Assessment.company))
    )
    if status and status != "all":
        query = query.where(Assessment.status == status)
    if sector and sector != "all":
        query = query.where(Company.sector == sector)
    if search:
        query = query.where(Company.name.ilike(f"%{search}%"))

    column = {
        "name": Company.name,
        "score": Assessment.composite_score,
        "sector": Company.sector,
    }.get(sort, Assessment.updated_at)
    direction = column.asc() if order == "asc" else column.desc()
    query = query.order_by(direction, Assessment.id.desc())
    return [assessment_summary(a) for a in session.execute(query).scalars().all()]


def apply_recalculation(assessment: Assessment, scores: list[DomainScore] | None = None) -> Recalculation:
    """Recompute domain ratings and composite from the assessment's sub-questions and store them."""
    recalc = recalculate_assessment(scores if scores is not None else assessment.domain_scores)
    assessment.set_domain_ratings(recalc.domain_ratings)
    assessment.composite_score = recalc.composite_score
    assessment.composite_rating = recalc.composite_rating
    return recalc


# ---------------------------------------------------------------------------
# Score override resolver
# ---------------------------------------------------------------------------


def override_score(
    session: Session, user_id: int, assessment_id: int, score_id: int,
    user_rating: str | None, user_reasoning: str | None = None,
) -> dict:
    """Set or clear the user override on one sub-question and recompute the assessment. Commits.

    ``user_rating=None`` clears the override so the effective rating falls back
    to the stored AI rating. A history row is written only when the effective
    rating actually changes; ``user_modified`` is set on every call and never
    cleared here.
    """
    if user_rating is not None:
        try:
            user_rating = RiskRating(user_rating)
        except ValueError:
            raise InvalidInputError(f"Invalid rating: {user_rating!r}") from None

    assessment = get_owned_assessment(session, assessment_id, user_id)
    score = session.execute(
        select(DomainScore).where(DomainScore.id == score_id, DomainScore.assessment_id == assessment.id)
    ).scalars().first()
    if score is None:
        raise NotFoundError("Score not found")

    old_effective = score.effective_rating
    score.user_rating = user_rating
    score.user_reasoning = user_reasoning
    score.effective_rating = user_rating or score.ai_rating or RiskRating.MEDIUM

    if score.effective_rating != old_effective:
        add_history(
            session, assessment.id, HistoryAction.SCORE_OVERRIDE,
            field_changed=score.question_key, old_value=old_effective, new_value=score.effective_rating,
        )

    session.flush()
    recalc = apply_recalculation(assessment)
    assessment.user_modified = True
    session.commit()
    log.info("Override on assessment %s (%s): %s -> %s, composite %s",
             assessment.id, score.question_key, old_effective, score.effective_rating, recalc.composite_score)
    return {
        "score": score_dict(score),
        "composite_score": recalc.composite_score,
        "composite_rating": recalc.composite_rating,
        "domain_ratings": recalc.domain_ratings,
    }


def update_notes(session: Session, user_id: int, assessment_id: int, notes: str | None) -> None:
    assessment = get_owned_assessment(session, assessment_id, user_id)
    assessment.notes = notes
    add_history(session, assessment.id, HistoryAction.NOTES_UPDATED, field_changed="notes", new_value=notes)
    session.commit()


def delete_assessment(session: Session, user_id: int, assessment_id: int) -> None:
    """Delete with cascades; a portfolio that held it is rebalanced in the same commit."""
    assessment = get_owned_assessment(session, assessment_id, user_id)
    held = bool(assessment.portfolio_entries)
    session.delete(assessment)
    session.flush()
    if held:
        portfolio.redistribute_weights(session, user_id)
    session.commit()
    log.info("Assessment %s deleted by user %s", assessment_id, user_id)


# ---------------------------------------------------------------------------
# Dashboard aggregates (portfolio-scoped, completed assessments only)
# ---------------------------------------------------------------------------


def _held_assessments(session: Session, user_id: int) -> list[tuple[Assessment, Decimal]]:
    return [(e.assessment, Decimal(str(e.weight or 0))) for e in portfolio.completed_entries(session, user_id)]


def dashboard_stats(session: Session, user_id: int) -> dict:
    held = _held_assessments(session, user_id)
    total_weight = sum((w for _, w in held), Decimal("0"))
    scored = [(Decimal(str(a.composite_score)), w) for a, w in held if a.composite_score is not None]

    if total_weight > 0:
        avg = sum((s * w for s, w in scored), Decimal("0")) / total_weight
    elif scored:
        avg = sum(s for s, _ in scored) / len(scored)
    else:
        avg = Decimal("0")

    counts: Counter[str] = Counter()
    weights: dict[str, Decimal] = {"high": Decimal("0"), "medium": Decimal("0"), "low": Decimal("0")}
    for a, w in held:
        bucket = RISK_BUCKETS.get(a.composite_rating)
        if bucket:
            counts[bucket] += 1
            weights[bucket] += w

    return {
        "total_companies": len({a.company_id for a, _ in held}),
        "total_assessments": len(held),
        "avg_composite_score": float(round(avg, 1)),
        "high_risk_count": counts["high"],
        "medium_risk_count": counts["medium"],
        "low_risk_count": counts["low"],
        "high_risk_weight": float(weights["high"]),
        "medium_risk_weight": float(weights["medium"]),
        "low_risk_weight": float(weights["low"]),
    }


def risk_distribution(session: Session, user_id: int) -> list[dict]:
    counts = Counter(a.composite_rating for a, _ in _held_assessments(session, user_id) if a.composite_rating)
    return [{"rating": str(r), "count": counts[r]} for r in COMPOSITE_ORDER if counts[r]]


def domain_breakdown(session: Session, user_id: int) -> list[dict]:
    """Per domain, how many held assessments have at least one sub-question at each rating."""
    ids = [a.id for a, _ in _held_assessments(session, user_id)]
    rows = session.execute(
        select(DomainScore.domain_number, DomainScore.effective_rating,
               func.count(func.distinct(DomainScore.assessment_id)))
        .where(DomainScore.assessment_id.in_(ids))
        .group_by(DomainScore.domain_number, DomainScore.effective_rating)
    ).all() if ids else []
    counts = {(number, rating): n for number, rating, n in rows}
    return [
        {
            "domain_number": d.number,
            "domain": d.name,
            "high": counts.get((d.number, RiskRating.HIGH), 0),
            "medium": counts.get((d.number, RiskRating.MEDIUM), 0),
            "low": counts.get((d.number, RiskRating.LOW), 0),
        }
        for d in DOMAINS
    ]


def sector_breakdown(session: Session, user_id: int) -> list[dict]:
    by_sector: dict[str, list[float]] = {}
    for a, _ in _held_assessments(session, user_id):
        if a.company.sector and a.composite_score is not None:
            by_sector.setdefault(a.company.sector, []).append(a.composite_score)
    rows = [
        {"sector": sector, "avg_score": round(sum(scores) / len(scores), 2), "count": len(scores)}
        for sector, scores in by_sector.items()
    ]
    rows.sort(key=lambda r: r["avg_score"], reverse=True)
    return rows


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


async def backfill_descriptions(session: Session, client: LLMClient | None = None) -> dict[str, Any]:
    """Fill missing company descriptions with one short LLM call each; failures are skipped."""
    companies = session.execute(
        select(Company).where((Company.description.is_(None)) | (Company.description == ""))
    ).scalars().all()
    if not companies:
        return {"updated": 0, "total": 0, "message": "All companies already have descriptions"}

    if client is None:
        client = LLMClient()
    updated = 0
    for company in companies:
        try:
            company.description = await describe_company(client, company.name, company.sector)
            session.commit()
            updated += 1
        except Exception as exc:
            log.warning("Backfill description failed for %s: %s", company.name, exc)
            session.rollback()
    log.info("Backfilled %d/%d company descriptions", updated, len(companies))
    return {"updated": updated, "total": len(companies)}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def user_dict(user: User) -> dict:
    return {"id": user.id, "username": user.username, "name": user.name, "role": user.role,
            "created_at": _iso(user.created_at)}


def list_users(session: Session) -> list[dict]:
    users = session.execute(select(User).order_by(User.created_at, User.id)).scalars().all()
    return [user_dict(u) for u in users]


def create_user(session: Session, username: str, name: str = "", role: str = "user") -> dict:
    username = username.strip()
    if not username:
        raise InvalidInputError("Username required")
    if role not in ("user", "admin"):
        raise InvalidInputError(f"Unknown role: {role!r}")
    if session.execute(select(User.id).where(User.username == username)).first() is not None:
        raise ConflictError("Username already taken")
    user = User(username=username, name=name, role=role)
    session.add(user)
    session.commit()
    log.info("User created: %s (%s)", username, role)
    return user_dict(user)


def delete_user(session: Session, acting_user_id: int, user_id: int) -> None:
    """Remove a user; the database cascades their assessments, portfolio and alerts."""
    if user_id == acting_user_id:
        raise InvalidInputError("Cannot delete yourself")
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    session.delete(user)
    session.commit()
    log.info("User %s deleted", user_id)
