from __future__ import annotations

from decimal import Decimal

import pytest

from airisk import portfolio
from airisk.errors import InvalidInputError, NotFoundError
from airisk.models import AssessmentStatus, PortfolioEntry
from airisk.services import create_assessment


def _weights(session, user_id):
    return [e.weight for e in session.query(PortfolioEntry).filter_by(user_id=user_id).order_by(PortfolioEntry.id)]


class TestEqualWeights:
    def test_sums_to_exactly_100(self):
        for n in range(1, 76):
            weights = portfolio.equal_weights(n)
            assert len(weights) == n
            assert sum(weights) == Decimal("100")
            assert all(w == w.quantize(Decimal("0.01")) for w in weights)

    def test_remainder_goes_first(self):
        assert portfolio.equal_weights(3) == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]

    def test_zero(self):
        assert portfolio.equal_weights(0) == []

    def test_stored_weights_sum_to_exactly_100(self, session, users, completed):
        alice, _ = users
        ids = [completed(alice.id, f"Company {i}").id for i in range(12)]
        for n, aid in enumerate(ids, start=1):
            portfolio.add_to_portfolio(session, alice.id, [aid])
            session.expire_all()
            stored = _weights(session, alice.id)
            assert len(stored) == n
            assert all(isinstance(w, Decimal) for w in stored)
            assert sum(stored) == Decimal("100")


class TestAddRemove:
    def test_add_redistributes(self, session, users, completed):
        alice, _ = users
        ids = [completed(alice.id, f"Company {i}").id for i in range(4)]
        result = portfolio.add_to_portfolio(session, alice.id, ids)
        assert len(result) == 4
        assert _weights(session, alice.id) == [25.0, 25.0, 25.0, 25.0]

    def test_add_is_idempotent(self, session, users, completed):
        alice, _ = users
        aid = completed(alice.id, "Acme").id
        portfolio.add_to_portfolio(session, alice.id, [aid])
        portfolio.add_to_portfolio(session, alice.id, [aid, aid])
        assert session.query(PortfolioEntry).filter_by(user_id=alice.id).count() == 1
        assert _weights(session, alice.id) == [100.0]

    def test_empty_request_rejected(self, session, users):
        alice, _ = users
        with pytest.raises(InvalidInputError):
            portfolio.add_to_portfolio(session, alice.id, [])

    def test_not_completed_rejected(self, session, users, completed):
        alice, _ = users
        done = completed(alice.id, "Done Co").id
        pending = create_assessment(session, alice.id, "Pending Co")
        session.commit()
        assert pending.status == AssessmentStatus.PENDING
        with pytest.raises(InvalidInputError):
            portfolio.add_to_portfolio(session, alice.id, [done, pending.id])
        session.rollback()
        assert session.query(PortfolioEntry).count() == 0

    def test_other_users_assessment_not_found(self, session, users, completed):
        alice, bob = users
        aid = completed(alice.id, "Acme").id
        with pytest.raises(NotFoundError):
            portfolio.add_to_portfolio(session, bob.id, [aid])

    def test_remove_rebalances(self, session, users, completed):
        alice, _ = users
        ids = [completed(alice.id, f"Company {i}").id for i in range(4)]
        portfolio.add_to_portfolio(session, alice.id, ids)
        entries = session.query(PortfolioEntry).filter_by(user_id=alice.id).order_by(PortfolioEntry.id).all()

        portfolio.remove_from_portfolio(session, alice.id, entries[1].id)

        assert _weights(session, alice.id) == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]

    def test_remove_other_users_entry(self, session, users, completed):
        alice, bob = users
        portfolio.add_to_portfolio(session, alice.id, [completed(alice.id, "Acme").id])
        entry = session.query(PortfolioEntry).one()
        with pytest.raises(NotFoundError):
            portfolio.remove_from_portfolio(session, bob.id, entry.id)
        assert session.query(PortfolioEntry).count() == 1

    def test_users_have_separate_portfolios(self, session, users, completed):
        alice, bob = users
        portfolio.add_to_portfolio(session, alice.id, [completed(alice.id, "Acme").id])
        portfolio.add_to_portfolio(session, bob.id, [completed(bob.id, "Acme").id, completed(bob.id, "Beta").id])
        assert _weights(session, alice.id) == [100.0]
        assert _weights(session, bob.id) == [50.0, 50.0]
        assert len(portfolio.list_portfolio(session, alice.id)) == 1


class TestUpdateWeights:
    @pytest.fixture()
    def entries(self, session, users, completed):
        alice, _ = users
        ids = [completed(alice.id, f"Company {i}").id for i in range(3)]
        portfolio.add_to_portfolio(session, alice.id, ids)
        return session.query(PortfolioEntry).filter_by(user_id=alice.id).order_by(PortfolioEntry.id).all()

    def test_apply(self, session, users, entries):
        alice, _ = users
        portfolio.update_weights(session, alice.id, [(entries[0].id, 50), (entries[1].id, 30), (entries[2].id, 20)])
        assert _weights(session, alice.id) == [50, 30, 20]

    def test_within_tolerance(self, session, users, entries):
        alice, _ = users
        portfolio.update_weights(session, alice.id, [(entries[0].id, 50), (entries[1].id, 30), (entries[2].id, 20.05)])
        assert _weights(session, alice.id)[2] == Decimal("20.05")

    def test_bad_sum_leaves_weights_unchanged(self, session, users, entries):
        alice, _ = users
        before = _weights(session, alice.id)
        with pytest.raises(InvalidInputError, match="Weights must sum to 100"):
            portfolio.update_weights(session, alice.id, [(entries[0].id, 50), (entries[1].id, 30), (entries[2].id, 10)])
        assert _weights(session, alice.id) == before

    def test_out_of_range(self, session, users, entries):
        alice, _ = users
        with pytest.raises(InvalidInputError):
            portfolio.update_weights(session, alice.id, [(entries[0].id, 120), (entries[1].id, -20)])

    def test_foreign_entry_leaves_weights_unchanged(self, session, users, entries, completed):
        alice, bob = users
        portfolio.add_to_portfolio(session, bob.id, [completed(bob.id, "Bob Co").id])
        bob_entry = session.query(PortfolioEntry).filter_by(user_id=bob.id).one()
        before = _weights(session, alice.id)
        with pytest.raises(NotFoundError):
            portfolio.update_weights(session, alice.id, [(entries[0].id, 50), (bob_entry.id, 50)])
        assert _weights(session, alice.id) == before
        assert bob_entry.weight == 100.0

    def test_duplicate_entry_rejected(self, session, users, entries):
        alice, _ = users
        before = _weights(session, alice.id)
        with pytest.raises(InvalidInputError, match="only once"):
            portfolio.update_weights(session, alice.id, [(entries[0].id, 50), (entries[0].id, 50)])
        assert _weights(session, alice.id) == before

    def test_every_entry_required(self, session, users, entries):
        alice, _ = users
        before = _weights(session, alice.id)
        with pytest.raises(InvalidInputError, match="every portfolio entry"):
            portfolio.update_weights(session, alice.id, [(entries[0].id, 60), (entries[1].id, 40)])
        assert _weights(session, alice.id) == before
        assert sum(before) == Decimal("100")
