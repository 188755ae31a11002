"""Long-running analysis workflows: single analysis, batch analysis, portfolio batch-add.

Each run reports through an ``emit(event, data)`` callable (see
:mod:`airisk.events`) and persists its state with explicit commits at phase
boundaries. A single analysis either clones a completed assessment of the same
company (any owner, no AI call) or asks the AI capability for a fresh
evaluation. Batches run companies strictly one after another and isolate
per-company failures.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from airisk import portfolio, services
from airisk.analyzer import AnalysisResult, CompanyAnalyzer
from airisk.domains import question_text
from airisk.errors import InvalidInputError
from airisk.events import (
    BATCH_COMPLETE,
    BATCH_START,
    COMPANY_COMPLETE,
    COMPANY_ERROR,
    COMPANY_START,
    COMPLETE,
    ERROR,
    EXISTING_ADDED,
    PROGRESS,
    CancelCheck,
    Emit,
    discard,
    never_cancelled,
)
from airisk.models import DOMAIN_SLOTS, Assessment, AssessmentStatus, Company, DomainScore, HistoryAction
from airisk.utils import unique_names

log = logging.getLogger(__name__)

BATCH_LIMIT = 20
PORTFOLIO_BATCH_LIMIT = 75

ANALYSIS_STEPS = 5
CLONE_STEPS = 3

SOURCE_EXISTING = "existing"
SOURCE_CLONED = "cloned"
SOURCE_ANALYZED = "analyzed"


@dataclass(frozen=True)
class AnalysisOutcome:
    assessment_id: int
    composite_score: int
    composite_rating: str
    source: str


def _step(emit: Emit, message: str, step: int, total: int) -> None:
    emit(PROGRESS, {"message": message, "step": step, "totalSteps": total})


def prepare_company_names(companies: Iterable[str | None], limit: int, *, allow_empty: bool = False) -> list[str]:
    """Trimmed, case-insensitively unique names, validated against *limit*."""
    names = unique_names(companies)
    if not names and not allow_empty:
        raise InvalidInputError("At least one company name is required")
    if len(names) > limit:
        raise InvalidInputError(f"At most {limit} companies per batch (got {len(names)})")
    for name in names:
        if len(name) > 200:
            raise InvalidInputError(f"Company name too long: {name[:40]}...")
    return names


# ---------------------------------------------------------------------------
# Single analysis
# ---------------------------------------------------------------------------


def find_donor(session: Session, company_id: int, exclude_id: int) -> Assessment | None:
    """Most recently updated completed assessment of the company, any owner."""
    return session.execute(
        select(Assessment)
        .where(
            Assessment.company_id == company_id,
            Assessment.status == AssessmentStatus.COMPLETED,
            Assessment.id != exclude_id,
        )
        .order_by(Assessment.updated_at.desc(), Assessment.id.desc())
        .limit(1)
    ).scalars().first()


def find_own_completed(session: Session, user_id: int, company_name: str) -> Assessment | None:
    return session.execute(
        select(Assessment)
        .join(Company, Assessment.company_id == Company.id)
        .where(
            Assessment.user_id == user_id,
            Assessment.status == AssessmentStatus.COMPLETED,
            func.lower(Company.name) == company_name.strip().lower(),
        )
        .order_by(Assessment.updated_at.desc(), Assessment.id.desc())
        .limit(1)
    ).scalars().first()


def clone_assessment(session: Session, assessment: Assessment, donor: Assessment, emit: Emit = discard) -> AnalysisOutcome:
    """Copy the donor's results into *assessment* and complete it. Commits.

    Domain ratings and the composite are taken from the donor as stored.
    Sub-questions carry only the AI side; donor overrides stay with the
    donor, so each copied effective rating starts equal to its AI rating.
    """
    _step(emit, "Found existing analysis, cloning...", 1, CLONE_STEPS)
    assessment.domain_scores = [
        DomainScore(
            domain_number=s.domain_number,
            question_key=s.question_key,
            question_text=s.question_text,
            ai_rating=s.ai_rating,
            ai_reasoning=s.ai_reasoning,
            ai_confidence=s.ai_confidence,
            effective_rating=s.ai_rating,
        )
        for s in donor.domain_scores
    ]

    _step(emit, "Saving results...", 2, CLONE_STEPS)
    session.flush()
    for slot in DOMAIN_SLOTS:
        setattr(assessment, f"domain{slot}_rating", getattr(donor, f"domain{slot}_rating"))
    assessment.composite_score = donor.composite_score
    assessment.composite_rating = donor.composite_rating
    assessment.narrative = donor.narrative
    assessment.domain_summaries = donor.domain_summaries
    assessment.ai_model = donor.ai_model
    assessment.status = AssessmentStatus.COMPLETED
    services.add_history(
        session, assessment.id, HistoryAction.ANALYSIS_CLONED, new_value=f"Cloned from assessment #{donor.id}",
    )
    session.commit()

    _step(emit, "Complete!", 3, CLONE_STEPS)
    log.info("Assessment %s cloned from #%s (composite %s)", assessment.id, donor.id, donor.composite_score)
    return _outcome(assessment, SOURCE_CLONED)


def _outcome(assessment: Assessment, source: str) -> AnalysisOutcome:
    return AnalysisOutcome(assessment.id, int(assessment.composite_score), assessment.composite_rating, source)


def _store_result(session: Session, assessment: Assessment, result: AnalysisResult, model: str, emit: Emit) -> AnalysisOutcome:
    """Replace sub-questions, recompute and complete the assessment in one commit."""
    _step(emit, "Saving results...", 3, ANALYSIS_STEPS)
    if result.sector:
        assessment.company.sector = result.sector

    scores = [
        DomainScore(
            domain_number=domain.domain_number,
            question_key=q.question_key,
            question_text=question_text(domain.domain_number, q.question_key),
            ai_rating=q.rating,
            ai_reasoning=q.reasoning,
            ai_confidence=q.confidence,
            effective_rating=q.rating,
        )
        for domain in result.domains
        for q in domain.questions
    ]
    assessment.domain_scores = scores

    _step(emit, "Calculating scores...", 4, ANALYSIS_STEPS)
    session.flush()
    recalc = services.apply_recalculation(assessment, scores)
    assessment.narrative = result.narrative
    assessment.domain_summaries = json.dumps(result.domain_summaries)
    assessment.ai_model = model
    assessment.status = AssessmentStatus.COMPLETED
    services.add_history(
        session, assessment.id, HistoryAction.ANALYSIS_COMPLETED,
        new_value=f"Score: {recalc.composite_score}, Rating: {recalc.composite_rating}",
    )
    session.commit()
    if recalc.composite_score != result.composite_score:
        log.info("Assessment %s: AI stated composite %s, recomputed %s",
                 assessment.id, result.composite_score, recalc.composite_score)

    _step(emit, "Complete!", 5, ANALYSIS_STEPS)
    return AnalysisOutcome(assessment.id, recalc.composite_score, recalc.composite_rating, SOURCE_ANALYZED)


def mark_failed(session: Session, assessment_id: int, message: str) -> None:
    assessment = session.get(Assessment, assessment_id)
    if assessment is None:
        return
    assessment.status = AssessmentStatus.ERROR
    services.add_history(session, assessment_id, HistoryAction.ANALYSIS_FAILED, new_value=message)
    session.commit()


async def run_analysis(
    session: Session, assessment: Assessment, analyzer: CompanyAnalyzer | None = None,
    emit: Emit = discard,
) -> AnalysisOutcome:
    """Bring one assessment to ``completed`` by cloning or by a fresh AI evaluation.

    On failure the partial work is rolled back, the assessment is marked
    ``error`` with an ``analysis_failed`` history row, and the exception is
    re-raised for the caller to report.
    """
    assessment_id = assessment.id
    donor = find_donor(session, assessment.company_id, assessment_id)
    if donor is not None:
        try:
            return clone_assessment(session, assessment, donor, emit)
        except Exception as exc:
            session.rollback()
            mark_failed(session, assessment_id, str(exc))
            raise

    company = assessment.company
    name, sector, description = company.name, company.sector, company.description
    assessment.status = AssessmentStatus.ANALYZING
    session.commit()
    _step(emit, "Starting analysis...", 1, ANALYSIS_STEPS)

    try:
        if analyzer is None:
            analyzer = CompanyAnalyzer()
        _step(emit, "Calling AI analysis...", 2, ANALYSIS_STEPS)
        result = await analyzer.analyze(
            name, sector, description, on_progress=lambda message: emit(PROGRESS, {"message": message}),
        )
        outcome = _store_result(session, assessment, result, analyzer.model, emit)
    except Exception as exc:
        log.warning("Analysis failed for %s (assessment %s): %s", name, assessment_id, exc)
        session.rollback()
        mark_failed(session, assessment_id, str(exc) or exc.__class__.__name__)
        raise

    log.info("Assessment %s completed for %s: %s (%s)",
             assessment_id, name, outcome.composite_score, outcome.composite_rating)
    return outcome


async def stream_analysis(
    session: Session, user_id: int, assessment_id: int, analyzer: CompanyAnalyzer | None = None,
    emit: Emit = discard,
) -> AnalysisOutcome | None:
    """Single-analysis stream: progress events, then ``complete`` or ``error``."""
    assessment = services.get_owned_assessment(session, assessment_id, user_id)
    try:
        outcome = await run_analysis(session, assessment, analyzer, emit)
    except Exception as exc:
        emit(ERROR, {"message": str(exc) or "Analysis failed"})
        return None
    emit(COMPLETE, {
        "assessment_id": outcome.assessment_id,
        "composite_score": outcome.composite_score,
        "composite_rating": outcome.composite_rating,
    })
    return outcome


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def _tagged(emit: Emit, index: int, company_name: str) -> Emit:
    def tagged(event: str, data: dict) -> None:
        emit(event, {"index": index, "company_name": company_name, **data})
    return tagged


def _completed_result(company_name: str, outcome: AnalysisOutcome) -> dict:
    return {
        "company_name": company_name,
        "status": AssessmentStatus.COMPLETED.value,
        "assessment_id": outcome.assessment_id,
        "composite_score": outcome.composite_score,
        "composite_rating": outcome.composite_rating,
    }


def _error_result(company_name: str, exc: Exception) -> dict:
    return {"company_name": company_name, "status": AssessmentStatus.ERROR.value,
            "error": str(exc) or "Analysis failed"}


async def _analyze_new(
    session: Session, user_id: int, name: str, sector: str | None,
    analyzer: CompanyAnalyzer | None, emit: Emit,
) -> AnalysisOutcome:
    assessment = services.create_assessment(session, user_id, name, sector, status=AssessmentStatus.ANALYZING)
    session.commit()
    return await run_analysis(session, assessment, analyzer, emit)


async def run_batch_analysis(
    session: Session, user_id: int, companies: Iterable[str], sector: str | None = None,
    analyzer: CompanyAnalyzer | None = None, emit: Emit = discard,
    is_cancelled: CancelCheck = never_cancelled,
) -> list[dict]:
    """Analyse up to 20 companies in order; one failing company never stops the others."""
    names = prepare_company_names(companies, BATCH_LIMIT)
    emit(BATCH_START, {"total": len(names)})
    log.info("Batch analysis of %d companies for user %s", len(names), user_id)

    results: list[dict] = []
    for index, name in enumerate(names):
        if is_cancelled():
            log.info("Batch cancelled after %d of %d companies", index, len(names))
            return results
        emit(COMPANY_START, {"index": index, "company_name": name})
        try:
            outcome = await _analyze_new(session, user_id, name, sector, analyzer, _tagged(emit, index, name))
            result = _completed_result(name, outcome)
            emit(COMPANY_COMPLETE, {"index": index, **result})
        except Exception as exc:
            log.warning("Batch analysis failed for %s: %s", name, exc)
            session.rollback()
            result = _error_result(name, exc)
            emit(COMPANY_ERROR, {"index": index, **result})
        results.append(result)

    emit(BATCH_COMPLETE, {"results": results})
    return results


async def run_portfolio_batch(
    session: Session, user_id: int, companies: Iterable[str], existing_ids: Iterable[int] = (),
    sector: str | None = None, analyzer: CompanyAnalyzer | None = None, emit: Emit = discard,
    is_cancelled: CancelCheck = never_cancelled,
) -> list[dict]:
    """Attach existing assessments, then reuse, clone or analyse each new company and hold it.

    Weights are redistributed once at the end, also when the run is
    cancelled or fails part way.
    """
    ids = list(existing_ids)
    names = prepare_company_names(companies, PORTFOLIO_BATCH_LIMIT, allow_empty=bool(ids))

    results: list[dict] = []
    try:
        if ids:
            added = portfolio.attach(session, user_id, ids)
            session.commit()
            emit(EXISTING_ADDED, {"count": added})

        emit(BATCH_START, {"total": len(names)})
        log.info("Portfolio batch for user %s: %d existing, %d companies", user_id, len(ids), len(names))
        for index, name in enumerate(names):
            if is_cancelled():
                log.info("Portfolio batch cancelled after %d of %d companies", index, len(names))
                return results
            emit(COMPANY_START, {"index": index, "company_name": name})
            item_emit = _tagged(emit, index, name)
            try:
                own = find_own_completed(session, user_id, name)
                if own is not None:
                    item_emit(PROGRESS, {"message": "Already assessed, reusing existing assessment"})
                    outcome = _outcome(own, SOURCE_EXISTING)
                else:
                    outcome = await _analyze_new(session, user_id, name, sector, analyzer, item_emit)
                portfolio.attach(session, user_id, [outcome.assessment_id])
                session.commit()
                result = {**_completed_result(name, outcome), "source": outcome.source}
                emit(COMPANY_COMPLETE, {"index": index, **result})
            except Exception as exc:
                log.warning("Portfolio batch failed for %s: %s", name, exc)
                session.rollback()
                result = _error_result(name, exc)
                emit(COMPANY_ERROR, {"index": index, **result})
            results.append(result)
    finally:
        session.rollback()
        portfolio.redistribute_weights(session, user_id)
        session.commit()

    emit(BATCH_COMPLETE, {"results": results})
    return results
