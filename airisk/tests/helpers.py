"""Fakes shared by the test modules."""
from __future__ import annotations

from airisk.analyzer import AnalysisResult, validate_analysis
from airisk.domains import DOMAINS
from airisk.scoring import compute_composite_score, compute_domain_rating, score_to_composite_rating

# Domain ratings that recompute to 7 / Medium-High Risk
MEDIUM_HIGH_RATINGS = {1: "high", 2: "high", 3: "medium", 4: "low"}
ALL_LOW = {1: "low", 2: "low", 3: "low", 4: "low"}


def make_analysis(company_name: str, ratings: dict[int, str] | None = None, sector: str = "Vertical Software") -> dict:
    """Raw LLM payload where every sub-question of domain N is rated ``ratings[N]``."""
    ratings = ratings or MEDIUM_HIGH_RATINGS
    domain_ratings = {d.number: compute_domain_rating([ratings[d.number]] * len(d.questions)) for d in DOMAINS}
    composite = compute_composite_score(domain_ratings)
    return {
        "company_name": company_name,
        "sector": sector,
        "domains": [
            {
                "domain_number": d.number,
                "domain_name": d.name,
                "overall_rating": ratings[d.number],
                "summary": f"{d.name} summary for {company_name}",
                "questions": [
                    {"question_key": q.key, "rating": ratings[d.number],
                     "reasoning": f"Reasoning on {q.key}", "confidence": "medium"}
                    for q in d.questions
                ],
            }
            for d in DOMAINS
        ],
        "narrative": f"Narrative for {company_name}.",
        "composite_score": composite,
        "composite_rating": score_to_composite_rating(composite),
    }


class FakeAnalyzer:
    """Stands in for CompanyAnalyzer; records calls, fails for chosen names."""

    model = "test-model"

    def __init__(self, ratings: dict[int, str] | None = None, fail_for: set[str] | None = None):
        self.ratings = ratings
        self.fail_for = fail_for or set()
        self.calls: list[str] = []

    async def analyze(self, company_name, sector=None, description=None, on_progress=None) -> AnalysisResult:
        self.calls.append(company_name)
        if on_progress:
            on_progress("Sending request to the model...")
        if company_name in self.fail_for:
            raise RuntimeError(f"LLM unavailable for {company_name}")
        return validate_analysis(make_analysis(company_name, self.ratings))


class Recorder:
    """Collects ``emit`` calls as ``(event, data)`` tuples."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def names(self) -> list[str]:
        return [e for e, _ in self.events]

    def of(self, name: str) -> list[dict]:
        return [d for e, d in self.events if e == name]
