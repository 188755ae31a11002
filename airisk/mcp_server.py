from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from airisk import news, orchestrator, portfolio, services
from airisk.db import init_db, session_scope
from airisk.domains import DOMAINS
from airisk.errors import AIRiskError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def airisk_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "AIRisk",
    instructions=(
        "AIRisk assesses the AI disruption risk of software companies and tracks a weighted portfolio. "
        "Start with get_dashboard_stats() for the portfolio overview, list_assessments() to browse, "
        "get_assessment(id) for sub-question detail, and list_news_alerts() for competitive news."
    ),
    lifespan=airisk_lifespan,
    json_response=True,
)


def _user_id() -> int:
    """Acting user for every tool call."""
    return int(os.environ.get("AIRISK_MCP_USER_ID", "1"))


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("airisk://overview")
def airisk_overview() -> str:
    """Overview of AIRisk: scoring model and workflow."""
    return json.dumps({
        "system": "AIRisk, AI disruption risk assessment for software portfolios",
        "domains": {d.number: {"name": d.name, "weight": d.weight} for d in DOMAINS},
        "scoring": (
            "Each sub-question is rated high/medium/low (3/2/1). A domain's rating is the mean "
            "(>= 2.5 high, >= 1.5 medium, else low). The composite is the weighted mean of domain "
            "scores rescaled to 1-10; <= 2.5 Low, <= 4 Medium-Low, <= 5.5 Medium, <= 7.5 Medium-High, "
            "else High Risk. User overrides replace the AI rating for scoring."
        ),
        "workflow": [
            "1. get_dashboard_stats(): portfolio size, weighted average score, risk buckets.",
            "2. get_portfolio(): holdings and weights.",
            "3. list_assessments(): browse with status/sector/search filters.",
            "4. get_assessment(id): domain scores, narrative, history.",
            "5. analyze_company(name): create and run an assessment (clones when one exists).",
            "6. list_news_alerts(): competitive news affecting holdings.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_dashboard_stats() -> dict:
    """Portfolio statistics, risk distribution and per-domain breakdown."""
    with session_scope() as session:
        uid = _user_id()
        return {
            "stats": services.dashboard_stats(session, uid),
            "risk_distribution": services.risk_distribution(session, uid),
            "domain_breakdown": services.domain_breakdown(session, uid),
            "sector_breakdown": services.sector_breakdown(session, uid),
        }


@mcp.tool()
def list_assessments(
    status: str | None = None, sector: str | None = None, search: str | None = None,
    sort: str = "updated_at", order: str = "desc", limit: int = 50,
) -> list[dict]:
    """List assessments.

    Args:
        status: pending, analyzing, completed, error or all.
        sector: Exact sector name.
        search: Substring of the company name.
        sort: name, score, sector or updated_at.
        order: asc or desc.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        items = services.list_assessments(
            session, _user_id(), status=status, sector=sector, search=search, sort=sort, order=order,
        )
        return items[:max(1, min(limit, 500))]


@mcp.tool()
def get_assessment(assessment_id: int) -> dict:
    """Full assessment: narrative, domain ratings, sub-question scores and history."""
    with session_scope() as session:
        try:
            return services.assessment_detail(services.get_owned_assessment(session, assessment_id, _user_id()))
        except AIRiskError as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_portfolio() -> list[dict]:
    """Portfolio holdings with weights and composite ratings."""
    with session_scope() as session:
        return portfolio.list_portfolio(session, _user_id())


@mcp.tool()
def list_news_alerts(min_relevance: int = news.DEFAULT_READ_MIN_RELEVANCE) -> list[dict]:
    """Stored competitive news alerts at or above a relevance score (1-10)."""
    with session_scope() as session:
        return news.list_alerts(session, _user_id(), min_relevance)


@mcp.tool()
async def analyze_company(company_name: str, sector: str | None = None, description: str | None = None) -> dict:
    """Create an assessment for a company and run it. Requires an LLM API key unless a completed
    assessment of the same company already exists, in which case it is cloned."""
    with session_scope() as session:
        uid = _user_id()
        try:
            assessment = services.create_assessment(session, uid, company_name, sector, description)
            session.commit()
            outcome = await orchestrator.run_analysis(session, assessment)
        except Exception as exc:
            return {"error": f"Analysis failed: {exc}"}
        return {
            "assessment_id": outcome.assessment_id,
            "company_name": company_name,
            "composite_score": outcome.composite_score,
            "composite_rating": outcome.composite_rating,
            "source": outcome.source,
        }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the AIRisk MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
