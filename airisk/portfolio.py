"""Portfolio membership and weight management.

Every function takes the owning ``user_id`` explicitly; entries belonging to
other users are never visible. Weights are percentages. Equal redistribution
is computed in :class:`~decimal.Decimal` so that the stored two-decimal
weights sum to exactly 100.00.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from airisk.errors import InvalidInputError, NotFoundError
from airisk.models import Assessment, AssessmentStatus, PortfolioEntry

log = logging.getLogger(__name__)

HUNDRED = Decimal("100")
CENT = Decimal("0.01")
WEIGHT_TOLERANCE = Decimal("0.1")


def equal_weights(count: int) -> list[Decimal]:
    """N two-decimal weights summing to exactly 100; the first one absorbs the rounding remainder."""
    if count <= 0:
        return []
    share = (HUNDRED / count).quantize(CENT, rounding=ROUND_HALF_UP)
    weights = [share] * count
    weights[0] = share + (HUNDRED - share * count)
    return weights


def _entries(session: Session, user_id: int) -> list[PortfolioEntry]:
    return list(session.execute(
        select(PortfolioEntry)
        .where(PortfolioEntry.user_id == user_id)
        .order_by(PortfolioEntry.id)
    ).scalars().all())


def redistribute_weights(session: Session, user_id: int) -> None:
    """Spread 100 equally over the user's entries, remainder to the lowest id (caller must commit)."""
    entries = _entries(session, user_id)
    for entry, weight in zip(entries, equal_weights(len(entries))):
        entry.weight = weight
    if entries:
        log.debug("Redistributed weights over %d entries for user %s", len(entries), user_id)


def completed_entries(session: Session, user_id: int) -> list[PortfolioEntry]:
    """Entries whose assessment is completed, with assessment and company loaded."""
    return list(session.execute(
        select(PortfolioEntry)
        .join(Assessment, PortfolioEntry.assessment_id == Assessment.id)
        .where(PortfolioEntry.user_id == user_id, Assessment.status == AssessmentStatus.COMPLETED)
        .options(joinedload(PortfolioEntry.assessment).joinedload(Assessment.company))
        .order_by(PortfolioEntry.added_at.desc(), PortfolioEntry.id.desc())
    ).unique().scalars().all())


def entry_summary(entry: PortfolioEntry) -> dict:
    a = entry.assessment
    return {
        "id": entry.id,
        "assessment_id": entry.assessment_id,
        "weight": float(entry.weight),
        "added_at": entry.added_at.isoformat() if entry.added_at else None,
        "company_name": a.company.name,
        "company_sector": a.company.sector,
        "composite_score": a.composite_score,
        "composite_rating": a.composite_rating,
        "domain1_rating": a.domain1_rating,
        "domain2_rating": a.domain2_rating,
        "domain3_rating": a.domain3_rating,
        "domain4_rating": a.domain4_rating,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


def list_portfolio(session: Session, user_id: int) -> list[dict]:
    return [entry_summary(e) for e in completed_entries(session, user_id)]


def get_owned_entry(session: Session, entry_id: int, user_id: int) -> PortfolioEntry:
    entry = session.execute(
        select(PortfolioEntry).where(PortfolioEntry.id == entry_id, PortfolioEntry.user_id == user_id)
    ).scalars().first()
    if entry is None:
        raise NotFoundError("Portfolio entry not found")
    return entry


def check_attachable(session: Session, user_id: int, assessment_ids: Iterable[int]) -> list[int]:
    """Unique ids, each owned by *user_id* and completed; raises before anything is written."""
    ids = list(dict.fromkeys(assessment_ids))
    if not ids:
        return ids
    rows = session.execute(
        select(Assessment.id, Assessment.status)
        .where(Assessment.id.in_(ids), Assessment.user_id == user_id)
    ).all()
    status_by_id = {row.id: row.status for row in rows}
    for aid in ids:
        if aid not in status_by_id:
            raise NotFoundError(f"Assessment {aid} not found")
        if status_by_id[aid] != AssessmentStatus.COMPLETED:
            raise InvalidInputError(f"Assessment {aid} is not completed")
    return ids


def attach(session: Session, user_id: int, assessment_ids: Iterable[int]) -> int:
    """Insert zero-weight entries for completed, owned assessments not yet held.

    Every id is checked before anything is added. Returns how many entries
    were created. Does not redistribute or commit.
    """
    ids = check_attachable(session, user_id, assessment_ids)
    if not ids:
        return 0

    held = set(session.execute(
        select(PortfolioEntry.assessment_id)
        .where(PortfolioEntry.user_id == user_id, PortfolioEntry.assessment_id.in_(ids))
    ).scalars().all())
    added = 0
    for aid in ids:
        if aid in held:
            continue
        session.add(PortfolioEntry(user_id=user_id, assessment_id=aid, weight=Decimal("0")))
        added += 1
    session.flush()
    return added


def add_to_portfolio(session: Session, user_id: int, assessment_ids: list[int]) -> list[dict]:
    """Add completed assessments (idempotent per id) and rebalance equally. Commits."""
    if not assessment_ids:
        raise InvalidInputError("assessment_ids must be a non-empty array")
    added = attach(session, user_id, assessment_ids)
    redistribute_weights(session, user_id)
    session.commit()
    log.info("Added %d assessments to portfolio of user %s", added, user_id)
    return list_portfolio(session, user_id)


def remove_from_portfolio(session: Session, user_id: int, entry_id: int) -> None:
    """Remove one entry and rebalance the rest. Commits."""
    entry = get_owned_entry(session, entry_id, user_id)
    session.delete(entry)
    session.flush()
    redistribute_weights(session, user_id)
    session.commit()
    log.info("Removed portfolio entry %s for user %s", entry_id, user_id)


def update_weights(session: Session, user_id: int, weights: list[tuple[int, float]]) -> None:
    """Apply explicit ``(entry_id, weight)`` pairs; they must sum to 100 +/- 0.1. Commits.

    The pairs must name every one of the caller's entries exactly once.
    Nothing is written when any check fails.
    """
    values = [(entry_id, Decimal(str(w)).quantize(CENT, rounding=ROUND_HALF_UP)) for entry_id, w in weights]
    total = sum((w for _, w in values), Decimal("0"))
    if abs(total - HUNDRED) > WEIGHT_TOLERANCE:
        raise InvalidInputError(f"Weights must sum to 100 (got {total:.1f})")
    for _, w in values:
        if w < 0 or w > HUNDRED:
            raise InvalidInputError(f"Weight out of range: {w}")
    entries = {e.id: e for e in _entries(session, user_id)}
    submitted = [entry_id for entry_id, _ in values]
    for entry_id in submitted:
        if entry_id not in entries:
            raise NotFoundError("Portfolio entry not found")
    if len(set(submitted)) != len(submitted):
        raise InvalidInputError("Each portfolio entry may appear only once")
    if set(submitted) != set(entries):
        raise InvalidInputError("Weights must be given for every portfolio entry")
    for entry_id, w in values:
        entries[entry_id].weight = w
    session.commit()
