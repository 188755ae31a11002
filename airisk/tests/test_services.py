from __future__ import annotations

import pytest

from airisk import portfolio, services
from airisk.errors import ConflictError, InvalidInputError, NotFoundError
from airisk.models import (
    Assessment,
    AssessmentHistory,
    Company,
    DomainScore,
    HistoryAction,
    PortfolioEntry,
    User,
)
from airisk.tests.helpers import ALL_LOW


def _history(session, assessment_id, action=None):
    query = session.query(AssessmentHistory).filter_by(assessment_id=assessment_id)
    if action:
        query = query.filter_by(action=action)
    return query.order_by(AssessmentHistory.id).all()


def _score(session, assessment_id, key):
    return session.query(DomainScore).filter_by(assessment_id=assessment_id, question_key=key).one()


class TestCompanies:
    def test_name_lookup_is_case_insensitive(self, session):
        first = services.get_or_create_company(session, "Acme Corp", "Vertical Software")
        again = services.get_or_create_company(session, "  acme corp ")
        assert first.id == again.id
        assert session.query(Company).count() == 1

    def test_sector_overrides_description_fills_gap(self, session):
        services.get_or_create_company(session, "Acme", "AdTech", "Original description")
        company = services.get_or_create_company(session, "ACME", "EdTech", "Replacement")
        assert company.sector == "EdTech"
        assert company.description == "Original description"

    def test_blank_name_rejected(self, session):
        with pytest.raises(InvalidInputError):
            services.get_or_create_company(session, "   ")

    def test_create_assessment_writes_created_history(self, session, users):
        alice, _ = users
        assessment = services.create_assessment(session, alice.id, "Acme")
        session.commit()
        assert assessment.status == "pending"
        assert [h.action for h in _history(session, assessment.id)] == [HistoryAction.CREATED]


class TestOverride:
    def test_set_then_clear_restores_ai_rating(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        assert assessment.composite_score == 7
        score = _score(session, assessment.id, "ai_native_startups")

        result = services.override_score(session, alice.id, assessment.id, score.id, "high", "Well funded rivals")
        assert result["score"]["effective_rating"] == "high"
        assert result["score"]["ai_rating"] == "low"
        assert result["domain_ratings"][4] == "medium"
        assert result["composite_score"] == 8
        assert result["composite_rating"] == "High Risk"
        assert assessment.domain4_rating == "medium"

        result = services.override_score(session, alice.id, assessment.id, score.id, None)
        stored = _score(session, assessment.id, "ai_native_startups")
        assert stored.user_rating is None
        assert stored.user_reasoning is None
        assert stored.effective_rating == stored.ai_rating == "low"
        assert result["composite_score"] == 7
        assert result["composite_rating"] == "Medium-High Risk"

    def test_history_only_on_effective_change(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        score = _score(session, assessment.id, "ai_native_startups")

        # Same as the AI rating: effective rating unchanged
        services.override_score(session, alice.id, assessment.id, score.id, "low", "Agree")
        assert _history(session, assessment.id, HistoryAction.SCORE_OVERRIDE) == []

        services.override_score(session, alice.id, assessment.id, score.id, "high")
        rows = _history(session, assessment.id, HistoryAction.SCORE_OVERRIDE)
        assert len(rows) == 1
        assert (rows[0].field_changed, rows[0].old_value, rows[0].new_value) == ("ai_native_startups", "low", "high")

    def test_user_modified_is_sticky(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        score = _score(session, assessment.id, "tech_debt")
        assert not assessment.user_modified
        services.override_score(session, alice.id, assessment.id, score.id, "high")
        services.override_score(session, alice.id, assessment.id, score.id, None)
        assert assessment.user_modified is True

    def test_invalid_rating(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        score = _score(session, assessment.id, "tech_debt")
        with pytest.raises(InvalidInputError):
            services.override_score(session, alice.id, assessment.id, score.id, "extreme")
        assert _score(session, assessment.id, "tech_debt").effective_rating == "medium"

    def test_score_of_another_assessment(self, session, users, completed):
        alice, _ = users
        first = completed(alice.id, "Acme")
        second = completed(alice.id, "Beta")
        foreign = _score(session, second.id, "tech_debt")
        with pytest.raises(NotFoundError):
            services.override_score(session, alice.id, first.id, foreign.id, "high")

    def test_other_user_cannot_override(self, session, users, completed):
        alice, bob = users
        assessment = completed(alice.id, "Acme")
        score = _score(session, assessment.id, "tech_debt")
        with pytest.raises(NotFoundError):
            services.override_score(session, bob.id, assessment.id, score.id, "high")


class TestAssessments:
    def test_owner_isolation(self, session, users, completed):
        alice, bob = users
        assessment = completed(alice.id, "Acme")
        with pytest.raises(NotFoundError):
            services.get_owned_assessment(session, assessment.id, bob.id)
        with pytest.raises(NotFoundError):
            services.delete_assessment(session, bob.id, assessment.id)
        assert services.list_assessments(session, bob.id) == []

    def test_notes_write_history(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        services.update_notes(session, alice.id, assessment.id, "Watch the pricing change")
        assert assessment.notes == "Watch the pricing change"
        rows = _history(session, assessment.id, HistoryAction.NOTES_UPDATED)
        assert rows[0].new_value == "Watch the pricing change"

    def test_list_filters_and_sort(self, session, users, completed):
        alice, _ = users
        completed(alice.id, "Zeta Systems", sector="AdTech")
        completed(alice.id, "Alpha Labs", ratings=ALL_LOW, sector="EdTech")
        services.create_assessment(session, alice.id, "Pending Inc")
        session.commit()

        names = [a["company_name"] for a in services.list_assessments(session, alice.id, sort="name", order="asc")]
        assert names == ["Alpha Labs", "Pending Inc", "Zeta Systems"]

        done = services.list_assessments(session, alice.id, status="completed", sort="score", order="desc")
        assert [a["company_name"] for a in done] == ["Zeta Systems", "Alpha Labs"]

        assert [a["company_name"] for a in services.list_assessments(session, alice.id, sector="EdTech")] == ["Alpha Labs"]
        assert [a["company_name"] for a in services.list_assessments(session, alice.id, search="zeta")] == ["Zeta Systems"]

    def test_detail(self, session, users, completed):
        alice, _ = users
        assessment = completed(alice.id, "Acme")
        detail = services.assessment_detail(assessment)
        assert len(detail["domain_scores"]) == 13
        assert detail["domain_summaries"][1] == "Customer Demand summary for Acme"
        assert detail["history"][0]["action"] == HistoryAction.ANALYSIS_COMPLETED

    def test_delete_cascades_and_rebalances(self, session, users, completed):
        alice, _ = users
        ids = [completed(alice.id, name).id for name in ("Acme", "Beta", "Gamma")]
        portfolio.add_to_portfolio(session, alice.id, ids)

        services.delete_assessment(session, alice.id, ids[0])

        assert session.get(Assessment, ids[0]) is None
        assert session.query(DomainScore).filter_by(assessment_id=ids[0]).count() == 0
        weights = [e.weight for e in session.query(PortfolioEntry).order_by(PortfolioEntry.id)]
        assert weights == [50.0, 50.0]


class TestDashboard:
    @pytest.fixture()
    def held(self, session, users, completed):
        alice, _ = users
        high = completed(alice.id, "Acme", sector="CRM / Customer Engagement")
        low = completed(alice.id, "Beta", ratings=ALL_LOW, sector="Cybersecurity")
        completed(alice.id, "Not Held")
        portfolio.add_to_portfolio(session, alice.id, [high.id, low.id])
        return alice

    def test_stats(self, session, held):
        stats = services.dashboard_stats(session, held.id)
        assert stats["total_companies"] == 2
        assert stats["total_assessments"] == 2
        assert stats["avg_composite_score"] == 4.0
        assert (stats["high_risk_count"], stats["medium_risk_count"], stats["low_risk_count"]) == (1, 0, 1)
        assert stats["high_risk_weight"] == 50.0
        assert stats["low_risk_weight"] == 50.0

    def test_weighted_average_follows_weights(self, session, held):
        entries = session.query(PortfolioEntry).order_by(PortfolioEntry.id).all()
        portfolio.update_weights(session, held.id, [(entries[0].id, 75), (entries[1].id, 25)])
        # 7 * 0.75 + 1 * 0.25
        assert services.dashboard_stats(session, held.id)["avg_composite_score"] == 5.5

    def test_empty_portfolio(self, session, users):
        alice, _ = users
        stats = services.dashboard_stats(session, alice.id)
        assert stats["total_assessments"] == 0
        assert stats["avg_composite_score"] == 0.0
        assert services.risk_distribution(session, alice.id) == []
        assert all(row["high"] == row["medium"] == row["low"] == 0
                   for row in services.domain_breakdown(session, alice.id))

    def test_risk_distribution(self, session, held):
        assert services.risk_distribution(session, held.id) == [
            {"rating": "Medium-High Risk", "count": 1},
            {"rating": "Low Risk", "count": 1},
        ]

    def test_domain_breakdown(self, session, held):
        rows = {r["domain_number"]: r for r in services.domain_breakdown(session, held.id)}
        assert (rows[1]["high"], rows[1]["medium"], rows[1]["low"]) == (1, 0, 1)
        assert (rows[3]["high"], rows[3]["medium"], rows[3]["low"]) == (0, 1, 1)
        assert (rows[4]["high"], rows[4]["medium"], rows[4]["low"]) == (0, 0, 2)

    def test_sector_breakdown(self, session, held):
        assert services.sector_breakdown(session, held.id) == [
            {"sector": "CRM / Customer Engagement", "avg_score": 7.0, "count": 1},
            {"sector": "Cybersecurity", "avg_score": 1.0, "count": 1},
        ]


class TestUsers:
    def test_create_and_list(self, session, users):
        created = services.create_user(session, "carol", "Carol")
        assert created["role"] == "user"
        assert [u["username"] for u in services.list_users(session)] == ["alice", "bob", "carol"]

    def test_duplicate_username(self, session, users):
        with pytest.raises(ConflictError):
            services.create_user(session, "bob")

    def test_cannot_delete_self(self, session, users):
        alice, _ = users
        with pytest.raises(InvalidInputError):
            services.delete_user(session, alice.id, alice.id)

    def test_delete_cascades(self, session, users, completed):
        alice, bob = users
        completed(bob.id, "Acme")
        services.delete_user(session, alice.id, bob.id)
        assert session.get(User, bob.id) is None
        assert session.query(Assessment).filter_by(user_id=bob.id).count() == 0
