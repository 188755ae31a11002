"""Deterministic scoring engine: sub-question ratings to a composite risk score.

Aggregation
-----------
Every sub-question carries an *effective* rating (the user override if one
exists, otherwise the AI's rating). Ratings map to numbers
(low=1, medium=2, high=3) and are aggregated in stages:

- **Domain rating**: mean of the domain's sub-question scores;
  ``>= 2.5`` is high, ``>= 1.5`` is medium, anything lower is low.
- **Composite score**: weighted mean of the domain scores over the domains
  that have a rating, rescaled from ``[1, 3]`` to ``[1, 10]`` and rounded.
- **Composite rating**: first ascending threshold the score falls under.

Nothing here touches the database. :func:`recalculate_assessment` is the only
producer of ``composite_score`` / ``composite_rating`` values that get
persisted.
"""
from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from airisk.domains import DOMAIN_WEIGHTS
from airisk.models import CompositeRating, RiskRating

RATING_TO_SCORE: dict[str, int] = {
    RiskRating.LOW: 1,
    RiskRating.MEDIUM: 2,
    RiskRating.HIGH: 3,
}

# Upper bounds are inclusive, checked in ascending order.
COMPOSITE_RATING_THRESHOLDS: tuple[tuple[float, CompositeRating], ...] = (
    (2.5, CompositeRating.LOW),
    (4.0, CompositeRating.MEDIUM_LOW),
    (5.5, CompositeRating.MEDIUM),
    (7.5, CompositeRating.MEDIUM_HIGH),
    (10.0, CompositeRating.HIGH),
)

# Policy: a domain with no sub-questions is treated as medium risk rather than unrated.
EMPTY_DOMAIN_RATING = RiskRating.MEDIUM

# Policy: with no rated domains at all the composite sits at the scale midpoint.
NO_DOMAINS_COMPOSITE = 5


class ScoredQuestion(Protocol):
    domain_number: int
    effective_rating: str


@dataclass(frozen=True)
class Recalculation:
    domain_ratings: dict[int, str]
    composite_score: int
    composite_rating: str


def rating_to_score(rating: str) -> int:
    try:
        return RATING_TO_SCORE[RiskRating(rating)]
    except ValueError as exc:
        raise ValueError(f"Unknown rating: {rating!r}") from exc


def compute_domain_rating(ratings: Iterable[str]) -> str:
    """Mean of the numeric scores, bucketed back into a rating."""
    scores = [rating_to_score(r) for r in ratings]
    if not scores:
        return EMPTY_DOMAIN_RATING
    avg = sum(scores) / len(scores)
    if avg >= 2.5:
        return RiskRating.HIGH
    if avg >= 1.5:
        return RiskRating.MEDIUM
    return RiskRating.LOW


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def compute_composite_score(domain_ratings: Mapping[int, str | None]) -> int:
    """Weighted 1-10 composite over the domains that carry a rating."""
    weighted_sum = 0.0
    total_weight = 0.0
    for number, weight in DOMAIN_WEIGHTS.items():
        rating = domain_ratings.get(number)
        if rating:
            weighted_sum += rating_to_score(rating) * weight
            total_weight += weight
    if total_weight == 0:
        return NO_DOMAINS_COMPOSITE
    raw = weighted_sum / total_weight
    return _round_half_up(((raw - 1) / 2) * 9 + 1)


def score_to_composite_rating(score: float) -> str:
    for upper, rating in COMPOSITE_RATING_THRESHOLDS:
        if score <= upper:
            return rating
    return CompositeRating.HIGH


def recalculate_assessment(domain_scores: Iterable[ScoredQuestion]) -> Recalculation:
    """Group sub-questions by domain and derive domain ratings and the composite."""
    by_domain: dict[int, list[str]] = defaultdict(list)
    for score in domain_scores:
        by_domain[score.domain_number].append(score.effective_rating)

    domain_ratings = {number: compute_domain_rating(ratings) for number, ratings in sorted(by_domain.items())}
    composite_score = compute_composite_score(domain_ratings)
    return Recalculation(
        domain_ratings=domain_ratings,
        composite_score=composite_score,
        composite_rating=score_to_composite_rating(composite_score),
    )
