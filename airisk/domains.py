"""Risk domains, their sub-questions, and the recommended sector list.

The question set is fixed: 4 domains, each with a handful of sub-questions.
``question_key`` values are stable identifiers persisted on every
:class:`~airisk.models.DomainScore`; ``text`` is snapshotted at evaluation
time so later wording changes do not rewrite history.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Question:
    key: str
    text: str
    guidance: str


@dataclass(frozen=True)
class Domain:
    number: int
    name: str
    description: str
    weight: float
    questions: tuple[Question, ...]

    @property
    def question_keys(self) -> tuple[str, ...]:
        return tuple(q.key for q in self.questions)


DOMAINS: tuple[Domain, ...] = (
    Domain(
        number=1,
        name="Customer Demand",
        description="Assesses whether the software's core use case will persist and remain valuable in an AI-enabled world.",
        weight=0.30,
        questions=(
            Question(
                "durability_of_use_case",
                "Durability of use case: Will the software's use case persist in an AI-enabled world?",
                "Consider whether AI could fully automate or eliminate the need for this software. "
                "E.g., call center software may be at high risk if AI agents handle calls directly.",
            ),
            Question(
                "cost_of_failure_switching",
                "High cost of failure / switching costs: Will customers tolerate unreliability of AI "
                "or risk moving solutions?",
                "Consider mission-criticality, regulatory requirements, and how painful it would be to switch. "
                "Higher switching costs = lower risk.",
            ),
            Question(
                "customer_sophistication",
                "Customer sophistication: Will customers rely on the software vendor to provide AI "
                "functionality or vibe code their own in-house?",
                "Less sophisticated customers (e.g., SMBs) are more likely to stay with vendors. "
                "Highly technical customers may build their own AI solutions.",
            ),
        ),
    ),
    Domain(
        number=2,
        name="Moats",
        description="Evaluates the structural characteristics, competitive moats, and pricing resilience of the software product.",
        weight=0.30,
        questions=(
            Question(
                "data_control_system_of_record",
                "Control over data / system of record vs. workflow: Does the business manage critical "
                "customer data or is it purely workflow based?",
                "Systems of record (managing complex, real-time data) are harder to displace than pure "
                "workflow tools. Data gravity creates moats.",
            ),
            Question(
                "platform_vs_point",
                "Platform vs point solution: Is the product the backbone of where work gets done, "
                "or simply an add-on tool?",
                'Platforms that are the "choke point" for customer workflows are more defensible than '
                "point solutions that can be easily replaced.",
            ),
            Question(
                "pricing_model",
                "Pricing model: Is pricing based on consumption, seats, or outcomes? Is the pricing "
                "model moving in that direction?",
                "Seat-based pricing is at risk as AI reduces headcount. Consumption and outcome-based "
                "models are more resilient to AI-driven seat compression.",
            ),
            Question(
                "structural_moats",
                "Does the business have network effects, proprietary data, a self-improving product, "
                "a captured market, or regulatory lock-in?",
                "Evaluate each moat type: network effects, proprietary data, self-improving loops, "
                "captive customers, regulatory barriers.",
            ),
        ),
    ),
    Domain(
        number=3,
        name="Tech Stack",
        description="Evaluates the company's technical foundation and readiness to incorporate AI.",
        weight=0.15,
        questions=(
            Question(
                "cloud_native_modern",
                "Is the tech cloud-native, modular, and modern?",
                "Legacy on-premise architectures are harder to integrate with AI. Cloud-native, "
                "microservices-based architectures can more easily adopt AI capabilities.",
            ),
            Question(
                "tech_debt",
                "Is there tech debt?",
                "Significant tech debt slows AI adoption and makes the company more vulnerable to "
                "nimble AI-native competitors.",
            ),
            Question(
                "integration_capability",
                "Does the software easily integrate with other software?",
                "Strong API ecosystem and integration capabilities allow the product to participate in "
                "AI-enhanced workflows rather than being bypassed.",
            ),
            Question(
                "ai_strategy",
                "Does the company have a clear AI strategy?",
                "Evaluate whether the company has articulated and is executing on a coherent AI strategy, "
                "including product roadmap, partnerships, and investment.",
            ),
        ),
    ),
    Domain(
        number=4,
        name="AI Competition",
        description="Evaluates the competitive threat from both incumbent AI offerings and AI-native startups.",
        weight=0.25,
        questions=(
            Question(
                "incumbent_ai_comparison",
                "How does the company's products compare with other incumbent AI offerings?",
                "Assess whether competitors in the same space have stronger AI capabilities, better AI "
                "integration, or more advanced AI features.",
            ),
            Question(
                "ai_native_startups",
                "Are there AI-native startups attacking the same use case? Are they well funded?",
                "Well-funded AI-native startups can build from scratch without legacy constraints. "
                "Consider funding levels and traction.",
            ),
        ),
    ),
)

DOMAINS_BY_NUMBER: dict[int, Domain] = {d.number: d for d in DOMAINS}

# Slot 5 exists in storage but carries no weight.
DOMAIN_WEIGHTS: dict[int, float] = {d.number: d.weight for d in DOMAINS}

SUB_SECTOR_CLASSIFICATIONS: dict[str, list[str]] = {
    "Expected Tailwinds": [
        "Cybersecurity",
        "Data Management",
        "Hardware / Infrastructure",
    ],
    "Low Risk / Insulated": [
        "Office of the CFO / ERP",
        "Tech Services",
        "Classifieds / Marketplaces",
        "Vertical Software",
    ],
    "Medium Risk": [
        "Application Software",
        "Human Capital Management",
        "DevOps / Infrastructure Software",
    ],
    "High Risk": [
        "CRM / Customer Engagement",
        "EdTech",
        "AdTech",
        "Data Analytics",
    ],
}

ALL_SECTORS: list[str] = [s for group in SUB_SECTOR_CLASSIFICATIONS.values() for s in group]


def question_text(domain_number: int, question_key: str) -> str:
    """Current wording for a question, falling back to the key for unknown questions."""
    domain = DOMAINS_BY_NUMBER.get(domain_number)
    if domain is not None:
        for q in domain.questions:
            if q.key == question_key:
                return q.text
    return question_key


def catalogue() -> list[dict]:
    return [
        {
            "number": d.number, "name": d.name, "description": d.description, "weight": d.weight,
            "questions": [{"key": q.key, "text": q.text, "guidance": q.guidance} for q in d.questions],
        }
        for d in DOMAINS
    ]
