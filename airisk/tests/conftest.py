from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from airisk import services
from airisk.db import enable_sqlite_foreign_keys
from airisk.models import AssessmentStatus, Base, DomainScore, HistoryAction, User
from airisk.tests.helpers import make_analysis


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture()
def users(session):
    alice = User(username="alice", name="Alice", role="admin")
    bob = User(username="bob", name="Bob", role="user")
    session.add_all([alice, bob])
    session.commit()
    return alice, bob


@pytest.fixture()
def completed(session):
    """Factory: a completed assessment for (user, company) with uniform ratings per domain."""
    def _make(user_id: int, company_name: str, ratings: dict[int, str] | None = None, sector: str | None = None):
        payload = make_analysis(company_name, ratings)
        assessment = services.create_assessment(session, user_id, company_name, sector)
        assessment.domain_scores = [
            DomainScore(
                domain_number=d["domain_number"], question_key=q["question_key"], question_text=q["question_key"],
                ai_rating=q["rating"], ai_reasoning=q["reasoning"], ai_confidence=q["confidence"],
                effective_rating=q["rating"],
            )
            for d in payload["domains"] for q in d["questions"]
        ]
        session.flush()
        services.apply_recalculation(assessment)
        assessment.narrative = payload["narrative"]
        assessment.domain_summaries = json.dumps({d["domain_number"]: d["summary"] for d in payload["domains"]})
        assessment.ai_model = "test-model"
        assessment.status = AssessmentStatus.COMPLETED
        services.add_history(session, assessment.id, HistoryAction.ANALYSIS_COMPLETED)
        session.commit()
        return assessment
    return _make
