"""Competitive news radar: web-search-backed scan scoped to one user's portfolio.

A scan searches from 30 days back on the first run, afterwards from the date
of the user's latest stored alert. Candidates are de-duplicated by headline
(case-insensitive) against everything the user already has, filtered by
relevance, and inserted together with their resolved portfolio impacts in one
commit after alerts older than the retention window are pruned. A response
that cannot be parsed aborts the scan before anything is written.
"""
from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, selectinload

from airisk import portfolio
from airisk.analyzer import LLMClient
from airisk.errors import InvalidInputError, NewsParseError
from airisk.events import COMPLETE, ERROR, PROGRESS, Emit, discard
from airisk.models import CompetitorType, NewsAlert, NewsAlertImpact, PortfolioEntry

log = logging.getLogger(__name__)

FIRST_SCAN_DAYS = 30
RETENTION_DAYS = 90
STALE_AFTER = timedelta(hours=4)
DEFAULT_READ_MIN_RELEVANCE = 6
MAX_ALERTS = 20

_ALERTS_RE = re.compile(r"\{[\s\S]*\"alerts\"[\s\S]*\}")
_FENCE_START = re.compile(r"^```(?:json)?\s*", re.MULTILINE)
_FENCE_END = re.compile(r"\s*```\s*$", re.MULTILINE)


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def scan_min_relevance() -> int:
    return int(os.environ.get("NEWS_SCAN_MIN_RELEVANCE", "5"))


# ---------------------------------------------------------------------------
# Response shape
# ---------------------------------------------------------------------------


class ImpactCandidate(BaseModel):
    company_name: str = ""
    impact_explanation: str = ""


class AlertCandidate(BaseModel):
    headline: str = Field(min_length=1)
    source: str | None = None
    source_url: str | None = None
    published_date: date | None = None
    summary: str = ""
    competitor: str | None = None
    competitor_type: str | None = None
    relevance_score: int = 5
    impacted_companies: list[ImpactCandidate] = Field(default_factory=list)

    @field_validator("headline", mode="before")
    @classmethod
    def _strip_headline(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("published_date", mode="before")
    @classmethod
    def _lenient_date(cls, v: Any) -> Any:
        if v in (None, "", "null"):
            return None
        if isinstance(v, str):
            try:
                return date.fromisoformat(v.strip()[:10])
            except ValueError:
                log.warning("Ignoring unparseable published_date %r", v)
                return None
        return v

    @field_validator("competitor_type", mode="before")
    @classmethod
    def _known_type(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip().lower()
        return v if v in {t.value for t in CompetitorType} else None

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _default_relevance(cls, v: Any) -> Any:
        return 5 if v in (None, "", 0) else v

    @field_validator("impacted_companies", mode="before")
    @classmethod
    def _impacts_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class NewsResponse(BaseModel):
    alerts: list[AlertCandidate] = Field(default_factory=list)


def parse_alerts(blocks: list[str]) -> list[AlertCandidate]:
    """Use the last text block that holds an ``{"alerts": ...}`` object."""
    for i in range(len(blocks) - 1, -1, -1):
        candidate = _FENCE_END.sub("", _FENCE_START.sub("", blocks[i].strip()))
        match = _ALERTS_RE.search(candidate)
        if not match:
            continue
        try:
            parsed = NewsResponse.model_validate(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValidationError) as exc:
            log.warning("News scan: alerts pattern in block %d did not parse: %s", i, exc)
            continue
        log.info("News scan: parsed block %d, %d alerts", i, len(parsed.alerts))
        return parsed.alerts
    last = blocks[-1][:500] if blocks else "NO TEXT BLOCKS"
    log.error("Failed to parse news response (%d blocks), last block: %s", len(blocks), last)
    raise NewsParseError("Failed to parse AI response. Please try again.")


# ---------------------------------------------------------------------------
# Search capability
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a competitive intelligence analyst specializing in AI disruption risk for software \
companies. You track AI product launches, partnerships, funding rounds, and feature \
announcements that could impact software companies.

Find recent, real news about competitor moves from:
(a) Foundation labs (Anthropic, OpenAI, Google DeepMind, Meta AI, xAI, Mistral, Cohere)
(b) AI-native startups (e.g. Cursor, Jasper, Harvey, Glean)
(c) Major incumbents adding AI capabilities (Microsoft, Google, Salesforce, Adobe)
that create competitive pressure on the portfolio companies listed below.

PORTFOLIO COMPANIES:
{portfolio_context}

IMPORTANT: Only search for news published on or after {since}. Do NOT include older news.
{incremental_note}
INSTRUCTIONS:
1. Use web search to find AI-related competitive news published since {since}.
2. For each news item, determine which portfolio companies it impacts and why.
3. Rate relevance 1-10 (10 = most impactful). Only include items with relevance >= {min_relevance}.
4. Be selective, quality over quantity. Max {max_alerts} alerts.
5. Return ONLY valid JSON, no markdown fences or commentary.

Return this exact JSON structure:
{{
  "alerts": [
    {{
      "headline": "Short headline of the news",
      "source": "Publication name",
      "source_url": "URL of the article if available, or null",
      "published_date": "YYYY-MM-DD or null if unknown",
      "summary": "2-3 sentence description of the news and its significance",
      "competitor": "Name of the company making the move",
      "competitor_type": "foundation_lab" | "ai_native" | "incumbent",
      "relevance_score": 7,
      "impacted_companies": [
        {{
          "company_name": "Exact name from portfolio",
          "impact_explanation": "1-2 sentences on how this news impacts this company"
        }}
      ]
    }}
  ]
}}"""


class NewsSearcher:
    """Asks the LLM (with web search where the provider has it) for competitive news."""

    max_tokens = 8000
    max_searches = 15

    def __init__(self, client: LLMClient | None = None):
        self.client = client if client is not None else LLMClient()

    async def search(
        self, portfolio_context: str, since: date, company_names: list[str], *,
        first_scan: bool = False, min_relevance: int = 5,
    ) -> list[AlertCandidate]:
        system = SYSTEM_PROMPT.format(
            portfolio_context=portfolio_context,
            since=since.isoformat(),
            incremental_note="" if first_scan else "This is an incremental scan. Only return NEW news items since the date above.\n",
            min_relevance=min_relevance,
            max_alerts=MAX_ALERTS,
        )
        user = (
            f"Search for AI competitive news published since {since.isoformat()} that could impact these "
            f"portfolio companies: {', '.join(company_names)}. Return the structured JSON as instructed."
        )
        uses = self.max_searches if self.client.supports_web_search else 0
        blocks = await self.client.complete(system, user, max_tokens=self.max_tokens, web_search_uses=uses)
        return parse_alerts(blocks)


# ---------------------------------------------------------------------------
# Scan orchestration
# ---------------------------------------------------------------------------


def _latest_scan(session: Session, user_id: int) -> datetime | None:
    return session.execute(
        select(func.max(NewsAlert.scanned_at)).where(NewsAlert.user_id == user_id)
    ).scalar_one_or_none()


def _alert_count(session: Session, user_id: int) -> int:
    return session.execute(
        select(func.count(NewsAlert.id)).where(NewsAlert.user_id == user_id)
    ).scalar_one()


def scan_entries(session: Session, user_id: int) -> list[PortfolioEntry]:
    """Completed portfolio entries to scan for; raises when there are none."""
    entries = portfolio.completed_entries(session, user_id)
    if not entries:
        raise InvalidInputError("No portfolio companies to scan for")
    return entries


def prune_alerts(session: Session, user_id: int, cutoff: date) -> None:
    """Delete the user's alerts published before *cutoff*, impacts first (caller must commit)."""
    stale_ids = select(NewsAlert.id).where(NewsAlert.user_id == user_id, NewsAlert.published_date < cutoff)
    session.execute(
        delete(NewsAlertImpact).where(NewsAlertImpact.alert_id.in_(stale_ids)),
        execution_options={"synchronize_session": False},
    )
    result = session.execute(
        delete(NewsAlert).where(NewsAlert.user_id == user_id, NewsAlert.published_date < cutoff),
        execution_options={"synchronize_session": False},
    )
    if result.rowcount:
        log.info("Pruned %d alerts older than %s for user %s", result.rowcount, cutoff, user_id)


async def run_news_scan(
    session: Session, user_id: int, searcher: NewsSearcher | None = None,
    emit: Emit = discard, now: datetime | None = None,
) -> dict[str, int]:
    """Incremental scan for one user. Returns ``{"alert_count", "new_count"}``.

    Raises :class:`InvalidInputError` for an empty portfolio and lets search or
    parse failures propagate without touching stored alerts.
    """
    now = now or _utcnow()
    entries = scan_entries(session, user_id)
    last_scan = _latest_scan(session, user_id)
    first_scan = last_scan is None
    since = (now - timedelta(days=FIRST_SCAN_DAYS)).date() if first_scan else last_scan.date()

    emit(PROGRESS, {"message": (
        f"First scan, searching last {FIRST_SCAN_DAYS} days of AI news..." if first_scan
        else f"Incremental scan, searching for news since {since.isoformat()}..."
    )})

    companies = [e.assessment.company for e in entries]
    context = "\n".join(
        f"- {e.assessment.company.name} (Sector: {e.assessment.company.sector or 'Unknown'}, "
        f"Risk Rating: {e.assessment.composite_rating or 'N/A'}, Score: {e.assessment.composite_score or 'N/A'})"
        for e in entries
    )
    floor = scan_min_relevance()

    emit(PROGRESS, {"message": "Searching for recent AI competitive news..."})
    if searcher is None:
        searcher = NewsSearcher()
    candidates = await searcher.search(
        context, since, [c.name for c in companies], first_scan=first_scan, min_relevance=floor,
    )

    emit(PROGRESS, {"message": "Processing search results..."})
    seen = {h.lower() for h in session.execute(
        select(NewsAlert.headline).where(NewsAlert.user_id == user_id)
    ).scalars().all()}
    fresh: list[AlertCandidate] = []
    duplicates = low_relevance = 0
    for candidate in candidates:
        key = candidate.headline.lower()
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        if candidate.relevance_score < floor:
            low_relevance += 1
            continue
        fresh.append(candidate)
    if duplicates:
        log.info("News scan: skipped %d duplicate alerts", duplicates)
    if low_relevance:
        log.info("News scan: dropped %d alerts below relevance %d", low_relevance, floor)

    skipped_note = f" ({duplicates} duplicates skipped)" if duplicates else ""
    emit(PROGRESS, {"message": f"Found {len(fresh)} new items{skipped_note}. Saving..."})

    entry_by_name = {e.assessment.company.name.lower(): e.id for e in entries}
    try:
        prune_alerts(session, user_id, (now - timedelta(days=RETENTION_DAYS)).date())
        for candidate in fresh:
            alert = NewsAlert(
                user_id=user_id,
                headline=candidate.headline,
                source=candidate.source,
                source_url=candidate.source_url,
                published_date=candidate.published_date,
                summary=candidate.summary,
                competitor=candidate.competitor,
                competitor_type=candidate.competitor_type,
                relevance_score=candidate.relevance_score,
                scanned_at=now,
            )
            for impact in candidate.impacted_companies:
                entry_id = entry_by_name.get(impact.company_name.strip().lower())
                if entry_id is None:
                    log.warning("News scan: impact on %r does not match a portfolio company", impact.company_name)
                    continue
                alert.impacts.append(NewsAlertImpact(
                    portfolio_entry_id=entry_id, impact_explanation=impact.impact_explanation,
                ))
            session.add(alert)
        session.commit()
    except Exception:
        session.rollback()
        raise

    total = _alert_count(session, user_id)
    log.info("News scan for user %s: %d new, %d total", user_id, len(fresh), total)
    result = {"alert_count": total, "new_count": len(fresh)}
    emit(COMPLETE, result)
    return result


async def stream_news_scan(
    session: Session, user_id: int, searcher: NewsSearcher | None = None, emit: Emit = discard,
) -> dict[str, int] | None:
    """Scan stream: any failure becomes a single ``error`` event."""
    try:
        return await run_news_scan(session, user_id, searcher, emit)
    except Exception as exc:
        log.exception("News scan failed for user %s", user_id)
        emit(ERROR, {"message": str(exc) or "Scan failed"})
        return None


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def alert_dict(alert: NewsAlert) -> dict:
    return {
        "id": alert.id,
        "headline": alert.headline,
        "source": alert.source,
        "source_url": alert.source_url,
        "published_date": alert.published_date.isoformat() if alert.published_date else None,
        "summary": alert.summary,
        "competitor": alert.competitor,
        "competitor_type": alert.competitor_type,
        "relevance_score": alert.relevance_score,
        "scanned_at": alert.scanned_at.isoformat() if alert.scanned_at else None,
        "impacts": [
            {
                "portfolio_entry_id": i.portfolio_entry_id,
                "company_name": i.portfolio_entry.assessment.company.name,
                "impact_explanation": i.impact_explanation,
            }
            for i in alert.impacts
        ],
    }


def list_alerts(session: Session, user_id: int, min_relevance: int = DEFAULT_READ_MIN_RELEVANCE) -> list[dict]:
    alerts = session.execute(
        select(NewsAlert)
        .where(NewsAlert.user_id == user_id, NewsAlert.relevance_score >= min_relevance)
        .options(selectinload(NewsAlert.impacts))
        .order_by(NewsAlert.relevance_score.desc(), NewsAlert.published_date.desc(), NewsAlert.id.desc())
    ).scalars().all()
    return [alert_dict(a) for a in alerts]


def scan_status(session: Session, user_id: int, now: datetime | None = None) -> dict:
    now = now or _utcnow()
    last = _latest_scan(session, user_id)
    return {
        "last_scanned_at": last.isoformat() if last else None,
        "alert_count": _alert_count(session, user_id),
        "is_stale": last is None or last < now - STALE_AFTER,
    }
