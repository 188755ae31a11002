from __future__ import annotations

import logging
import os
import tempfile
import zipfile
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.orm import Session

from airisk import events, news, orchestrator, portfolio, services
from airisk.analyzer import CompanyAnalyzer, LLMClient
from airisk.db import get_session, init_db, session_generator
from airisk.domains import ALL_SECTORS, catalogue
from airisk.errors import ConflictError, InvalidInputError, NotFoundError
from airisk.importer import read_company_names
from airisk.models import User
from airisk.news import NewsSearcher
from airisk.schemas import (
    AnalysisRequest,
    AssessmentCreate,
    AssessmentCreated,
    AssessmentDetail,
    AssessmentOut,
    BackfillOut,
    BatchAnalysisRequest,
    CompanyImportOut,
    DomainBreakdownOut,
    NewsAlertOut,
    NewsStatusOut,
    NotesUpdate,
    OverrideResult,
    PortfolioAdd,
    PortfolioBatchRequest,
    PortfolioEntryOut,
    RiskDistributionOut,
    ScoreOverride,
    SectorBreakdownOut,
    StatsOut,
    UserCreate,
    UserOut,
    WeightsUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="AIRisk",
    version="0.1.0",
    description=(
        "AI disruption risk assessment for software portfolios. "
        "Analyse companies with an LLM, override sub-question ratings, manage weighted "
        "portfolios and scan competitive news. Callers identify themselves with X-User-Id."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Assessments", "description": "Create, browse, override and annotate assessments."},
        {"name": "Analysis", "description": "LLM analysis runs (SSE progress streams)."},
        {"name": "Portfolio", "description": "Portfolio membership and weights."},
        {"name": "Dashboard", "description": "Portfolio-scoped aggregates."},
        {"name": "News", "description": "Competitive news radar."},
        {"name": "Admin", "description": "User management and maintenance."},
    ],
)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidInputError)
async def _invalid_input(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def session_factory() -> Callable[[], Session]:
    """Session constructor for streamed runs, which outlive the request-scoped session."""
    return get_session


def analyzer() -> CompanyAnalyzer | None:
    """``None`` lets the orchestrator build one only when a fresh AI call is needed."""
    return None


def news_searcher() -> NewsSearcher | None:
    return None


def llm_client() -> LLMClient:
    return LLMClient()


def current_user(
    x_user_id: int | None = Header(None, alias="X-User-Id"),
    session: Session = Depends(db_session),
) -> User:
    user = session.get(User, x_user_id) if x_user_id is not None else None
    if user is None:
        raise HTTPException(401, "Authentication required")
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(403, "Admin access required")
    return user


def _event_stream(factory: Callable[[], Session], work: Callable[[Session, events.EventChannel], Awaitable[Any]]):
    """SSE response running *work* with its own session."""
    async def run(channel: events.EventChannel) -> None:
        session = factory()
        try:
            await work(session, channel)
        finally:
            session.close()

    return StreamingResponse(
        events.stream(run), media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Routes: Meta
# ---------------------------------------------------------------------------


@app.get("/api/health", summary="Liveness probe")
async def health():
    return {"status": "ok"}


@app.get("/api/domains", summary="Risk domains, sub-questions and recommended sectors")
async def list_domains():
    return {"domains": catalogue(), "sectors": list(ALL_SECTORS)}


@app.get("/api/me", response_model=UserOut, summary="The calling user")
async def me(user: User = Depends(current_user)):
    return services.user_dict(user)


# ---------------------------------------------------------------------------
# Routes: Assessments
# ---------------------------------------------------------------------------


@app.get("/api/assessments", response_model=list[AssessmentOut],
         tags=["Assessments"], summary="List the caller's assessments")
async def list_assessments(
    status: str | None = Query(None, description="pending, analyzing, completed, error or all"),
    sector: str | None = Query(None),
    search: str | None = Query(None, description="Substring of the company name"),
    sort: str = Query("updated_at", description="name, score, sector or updated_at"),
    order: str = Query("desc", description="asc or desc"),
    user: User = Depends(current_user),
    session: Session = Depends(db_session),
):
    return services.list_assessments(
        session, user.id, status=status, sector=sector, search=search, sort=sort, order=order,
    )


@app.post("/api/assessments", response_model=AssessmentCreated, status_code=201,
          tags=["Assessments"], summary="Create a pending assessment (company created lazily)")
async def create_assessment(body: AssessmentCreate, user: User = Depends(current_user),
                            session: Session = Depends(db_session)):
    assessment = services.create_assessment(session, user.id, body.company_name, body.sector, body.description)
    session.commit()
    log.info("Assessment %s created for %s", assessment.id, body.company_name)
    return {"company_id": assessment.company_id, "assessment_id": assessment.id}


@app.get("/api/assessments/{assessment_id}", response_model=AssessmentDetail,
         tags=["Assessments"], summary="Assessment with sub-question scores and history")
async def get_assessment(assessment_id: int, user: User = Depends(current_user),
                         session: Session = Depends(db_session)):
    return services.assessment_detail(services.get_owned_assessment(session, assessment_id, user.id))


@app.patch("/api/assessments/{assessment_id}/scores/{score_id}", response_model=OverrideResult,
           tags=["Assessments"], summary="Override or clear one sub-question rating")
async def override_score(assessment_id: int, score_id: int, body: ScoreOverride,
                         user: User = Depends(current_user), session: Session = Depends(db_session)):
    return services.override_score(session, user.id, assessment_id, score_id, body.user_rating, body.user_reasoning)


@app.patch("/api/assessments/{assessment_id}/notes", tags=["Assessments"], summary="Update notes")
async def update_notes(assessment_id: int, body: NotesUpdate, user: User = Depends(current_user),
                       session: Session = Depends(db_session)):
    services.update_notes(session, user.id, assessment_id, body.notes)
    return {"success": True}


@app.delete("/api/assessments/{assessment_id}", tags=["Assessments"], summary="Delete an assessment")
async def delete_assessment(assessment_id: int, user: User = Depends(current_user),
                            session: Session = Depends(db_session)):
    services.delete_assessment(session, user.id, assessment_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Analysis (SSE)
# ---------------------------------------------------------------------------


@app.post("/api/analysis", tags=["Analysis"], summary="Analyse one assessment (SSE progress stream)")
async def analyze(
    body: AnalysisRequest,
    user: User = Depends(current_user),
    session: Session = Depends(db_session),
    factory: Callable[[], Session] = Depends(session_factory),
    company_analyzer: CompanyAnalyzer | None = Depends(analyzer),
):
    services.get_owned_assessment(session, body.assessment_id, user.id)
    user_id = user.id

    async def work(s: Session, channel: events.EventChannel) -> None:
        await orchestrator.stream_analysis(s, user_id, body.assessment_id, company_analyzer, channel.emit)

    return _event_stream(factory, work)


@app.post("/api/batch-analysis/import", response_model=CompanyImportOut,
          tags=["Analysis"], summary="Read company names from an XLSX upload")
async def import_companies(file: UploadFile = File(...), user: User = Depends(current_user)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return read_company_names(tmp_path)
    except (InvalidFileException, zipfile.BadZipFile, OSError) as exc:
        raise HTTPException(400, f"Could not read spreadsheet: {exc}") from exc
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.post("/api/batch-analysis", tags=["Analysis"], summary="Analyse up to 20 companies (SSE progress stream)")
async def batch_analysis(
    body: BatchAnalysisRequest,
    user: User = Depends(current_user),
    factory: Callable[[], Session] = Depends(session_factory),
    company_analyzer: CompanyAnalyzer | None = Depends(analyzer),
):
    names = orchestrator.prepare_company_names(body.companies, orchestrator.BATCH_LIMIT)
    user_id = user.id

    async def work(s: Session, channel: events.EventChannel) -> None:
        await orchestrator.run_batch_analysis(
            s, user_id, names, body.sector, company_analyzer, channel.emit, channel.is_cancelled,
        )

    return _event_stream(factory, work)


# ---------------------------------------------------------------------------
# Routes: Portfolio
# ---------------------------------------------------------------------------


@app.get("/api/portfolio", response_model=list[PortfolioEntryOut],
         tags=["Portfolio"], summary="The caller's portfolio")
async def get_portfolio(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return portfolio.list_portfolio(session, user.id)


@app.post("/api/portfolio", response_model=list[PortfolioEntryOut],
          tags=["Portfolio"], summary="Add completed assessments and rebalance equally")
async def add_to_portfolio(body: PortfolioAdd, user: User = Depends(current_user),
                           session: Session = Depends(db_session)):
    return portfolio.add_to_portfolio(session, user.id, body.assessment_ids)


@app.post("/api/portfolio/batch", tags=["Portfolio"],
          summary="Add existing assessments and up to 75 new companies (SSE progress stream)")
async def portfolio_batch(
    body: PortfolioBatchRequest,
    user: User = Depends(current_user),
    session: Session = Depends(db_session),
    factory: Callable[[], Session] = Depends(session_factory),
    company_analyzer: CompanyAnalyzer | None = Depends(analyzer),
):
    ids = portfolio.check_attachable(session, user.id, body.existing_assessment_ids)
    names = orchestrator.prepare_company_names(
        body.companies, orchestrator.PORTFOLIO_BATCH_LIMIT, allow_empty=bool(ids),
    )
    user_id = user.id

    async def work(s: Session, channel: events.EventChannel) -> None:
        await orchestrator.run_portfolio_batch(
            s, user_id, names, ids, body.sector, company_analyzer, channel.emit, channel.is_cancelled,
        )

    return _event_stream(factory, work)


@app.put("/api/portfolio/weights", tags=["Portfolio"], summary="Set weights explicitly (must sum to 100)")
async def update_weights(body: WeightsUpdate, user: User = Depends(current_user),
                         session: Session = Depends(db_session)):
    portfolio.update_weights(session, user.id, [(w.id, w.weight) for w in body.weights])
    return {"success": True}


@app.delete("/api/portfolio/{entry_id}", tags=["Portfolio"], summary="Remove an entry and rebalance")
async def remove_from_portfolio(entry_id: int, user: User = Depends(current_user),
                                session: Session = Depends(db_session)):
    portfolio.remove_from_portfolio(session, user.id, entry_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Dashboard
# ---------------------------------------------------------------------------


@app.get("/api/dashboard/stats", response_model=StatsOut, tags=["Dashboard"])
async def dashboard_stats(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return services.dashboard_stats(session, user.id)


@app.get("/api/dashboard/risk-distribution", response_model=list[RiskDistributionOut], tags=["Dashboard"])
async def risk_distribution(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return services.risk_distribution(session, user.id)


@app.get("/api/dashboard/domain-breakdown", response_model=list[DomainBreakdownOut], tags=["Dashboard"])
async def domain_breakdown(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return services.domain_breakdown(session, user.id)


@app.get("/api/dashboard/sector-breakdown", response_model=list[SectorBreakdownOut], tags=["Dashboard"])
async def sector_breakdown(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return services.sector_breakdown(session, user.id)


# ---------------------------------------------------------------------------
# Routes: News
# ---------------------------------------------------------------------------


@app.get("/api/news", response_model=list[NewsAlertOut], tags=["News"], summary="Stored alerts with impacts")
async def list_news(
    min_relevance: int = Query(news.DEFAULT_READ_MIN_RELEVANCE, ge=1, le=10),
    user: User = Depends(current_user),
    session: Session = Depends(db_session),
):
    return news.list_alerts(session, user.id, min_relevance)


@app.get("/api/news/status", response_model=NewsStatusOut, tags=["News"], summary="Last scan and staleness")
async def news_status(user: User = Depends(current_user), session: Session = Depends(db_session)):
    return news.scan_status(session, user.id)


@app.post("/api/news/scan", tags=["News"], summary="Incremental news scan (SSE progress stream)")
async def news_scan(
    user: User = Depends(current_user),
    session: Session = Depends(db_session),
    factory: Callable[[], Session] = Depends(session_factory),
    searcher: NewsSearcher | None = Depends(news_searcher),
):
    news.scan_entries(session, user.id)
    user_id = user.id

    async def work(s: Session, channel: events.EventChannel) -> None:
        await news.stream_news_scan(s, user_id, searcher, channel.emit)

    return _event_stream(factory, work)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/api/admin/users", response_model=list[UserOut], tags=["Admin"])
async def list_users(admin: User = Depends(require_admin), session: Session = Depends(db_session)):
    return services.list_users(session)


@app.post("/api/admin/users", response_model=UserOut, status_code=201, tags=["Admin"])
async def create_user(body: UserCreate, admin: User = Depends(require_admin),
                      session: Session = Depends(db_session)):
    return services.create_user(session, body.username, body.name, body.role)


@app.delete("/api/admin/users/{user_id}", tags=["Admin"])
async def delete_user(user_id: int, admin: User = Depends(require_admin),
                      session: Session = Depends(db_session)):
    services.delete_user(session, admin.id, user_id)
    return {"success": True}


@app.post("/api/admin/backfill-descriptions", response_model=BackfillOut, tags=["Admin"],
          summary="Fill missing company descriptions via the LLM")
async def backfill_descriptions(
    admin: User = Depends(require_admin),
    session: Session = Depends(db_session),
    client: LLMClient = Depends(llm_client),
):
    return await services.backfill_descriptions(session, client)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "airisk.app:app",
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8001")),
    )


if __name__ == "__main__":
    main()
