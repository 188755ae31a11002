"""AI analysis capability: one LLM call producing a structured risk evaluation.

Given a company name (plus optional sector and description) the model
returns, for each of the 4 fixed domains, a summary, an overall rating, and a
rating/reasoning/confidence per sub-question, together with a narrative and
its own composite. The response is validated against :class:`AnalysisResult`
and rejected loudly when it does not fit; the caller recomputes the composite
locally from the sub-question ratings.
"""
from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from airisk.domains import DOMAINS, SUB_SECTOR_CLASSIFICATIONS
from airisk.errors import AnalysisValidationError, LLMCallError

log = logging.getLogger(__name__)

ProgressFn = Callable[[str], None]

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-5-20250929"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    @property
    def supports_web_search(self) -> bool:
        return self.provider == "anthropic"

    async def complete(
        self,
        system: str,
        user: str,
        *,
        max_tokens: int = 2048,
        web_search_uses: int = 0,
        json_mode: bool = True,
    ) -> list[str]:
        """Send system+user message, return the text blocks of the reply in order."""
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {}
                if web_search_uses:
                    kwargs["tools"] = [{
                        "type": "web_search_20250305", "name": "web_search", "max_uses": web_search_uses,
                    }]
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    **kwargs,
                )
                blocks = [b.text for b in response.content if getattr(b, "type", "") == "text"]
                log.debug("LLM reply: %d blocks, %d text, stop_reason=%s",
                          len(response.content), len(blocks), response.stop_reason)
            else:
                extra: dict[str, Any] = {"response_format": {"type": "json_object"}} if json_mode else {}
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    **extra,
                )
                blocks = [response.choices[0].message.content or ""]
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        if not blocks:
            raise LLMCallError("LLM returned no text content", retryable=True)
        return blocks

    async def call(self, system: str, user: str, *, max_tokens: int = 2048) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        blocks = await self.complete(system, user, max_tokens=max_tokens)
        return parse_json_object(blocks[-1])


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a reply, tolerating markdown code fences."""
    text = text.strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
    if not isinstance(parsed, dict):
        raise LLMCallError("LLM returned JSON that is not an object", retryable=False)
    return parsed


# ---------------------------------------------------------------------------
# Response shape
# ---------------------------------------------------------------------------

Rating = Literal["high", "medium", "low"]
CompositeLabel = Literal["High Risk", "Medium-High Risk", "Medium Risk", "Medium-Low Risk", "Low Risk"]


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


class QuestionResult(BaseModel):
    question_key: str
    rating: Rating
    reasoning: str
    confidence: Rating

    normalize_ratings = field_validator("rating", "confidence", mode="before")(_lower)


class DomainResult(BaseModel):
    domain_number: int
    domain_name: str
    overall_rating: Rating
    summary: str
    questions: list[QuestionResult]

    normalize_rating = field_validator("overall_rating", mode="before")(_lower)


class AnalysisResult(BaseModel):
    company_name: str
    sector: str
    domains: list[DomainResult] = Field(min_length=4, max_length=4)
    narrative: str
    composite_score: float = Field(ge=1, le=10)
    composite_rating: CompositeLabel

    @model_validator(mode="after")
    def _one_result_per_domain(self) -> AnalysisResult:
        numbers = sorted(d.domain_number for d in self.domains)
        expected = [d.number for d in DOMAINS]
        if numbers != expected:
            raise ValueError(f"expected domains {expected}, got {numbers}")
        return self

    @property
    def domain_summaries(self) -> dict[int, str]:
        return {d.domain_number: d.summary for d in self.domains}


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = f"""\
You are a senior private credit analyst at a major fund specializing in software \
and technology investments. You have deep expertise in evaluating AI disruption \
risk for software companies.

Your task is to perform a structured AI disruption risk assessment for a given \
software company across 4 risk domains with specific sub-questions.

Sources of AI disruption risk for software:
1. AI makes software production massively cheaper: IT departments may insource, \
cheaper alternatives emerge from new vendors.
2. AI natives can disrupt systems of record with faster, simpler workflows; \
incumbents risk disruption from vertically focused agents.
3. AI can reduce seat count: productivity gains lead to lower seat counts and \
pricing pressure.

RISK RATING DEFINITIONS:
- "high" = the company is highly vulnerable to AI disruption in this area
- "medium" = some vulnerability, but with mitigating factors
- "low" = the company is well-positioned or insulated in this area

SUB-SECTOR REFERENCE CLASSIFICATIONS (context only, not a substitute for \
company-level analysis):
{json.dumps(SUB_SECTOR_CLASSIFICATIONS, indent=2)}

Respond with ONLY valid JSON matching the exact schema specified.
"""


def build_user_prompt(company_name: str, sector: str | None = None, description: str | None = None) -> str:
    domain_lines: list[str] = []
    for d in DOMAINS:
        domain_lines.append(f"  Domain {d.number}: {d.name}")
        for q in d.questions:
            domain_lines.append(
                f'    - question_key: "{q.key}"\n      question: "{q.text}"\n      guidance: "{q.guidance}"'
            )
        domain_lines.append("")

    header = [f"Perform a comprehensive AI disruption risk assessment for: {company_name}"]
    if sector:
        header.append(f"Sector: {sector}")
    if description:
        header.append(f"Description: {description}")

    return "\n".join(header) + f"""

Evaluate across these 4 domains and their sub-questions:

{chr(10).join(domain_lines)}
For each domain, provide a "summary": a single paragraph synthesizing all its sub-questions.

Respond with this exact JSON structure:
{{
  "company_name": "{company_name}",
  "sector": "<identified or provided sector>",
  "domains": [
    {{
      "domain_number": 1,
      "domain_name": "Customer Demand",
      "overall_rating": "high|medium|low",
      "summary": "<single paragraph>",
      "questions": [
        {{
          "question_key": "<from above>",
          "rating": "high|medium|low",
          "reasoning": "<2-4 sentence analysis>",
          "confidence": "high|medium|low"
        }}
      ]
    }}
  ],
  "narrative": "<2-3 paragraphs on key findings and overall risk posture, no investment recommendations>",
  "composite_score": <1-10 where 1=lowest risk, 10=highest risk>,
  "composite_rating": "High Risk|Medium-High Risk|Medium Risk|Medium-Low Risk|Low Risk"
}}
All 4 domains with all their questions must be present."""


DESCRIPTION_PROMPT = """\
You write one-paragraph company descriptions for a risk database. \
Respond with ONLY valid JSON: {"description": "<1-2 sentences on the core product or service>"}
"""


# ---------------------------------------------------------------------------
# Capability
# ---------------------------------------------------------------------------


class CompanyAnalyzer:
    """Runs the structured AI risk evaluation for one company."""

    max_tokens = 8192

    def __init__(self, client: LLMClient | None = None):
        self.client = client if client is not None else LLMClient()

    @property
    def model(self) -> str:
        return self.client.model

    async def analyze(
        self,
        company_name: str,
        sector: str | None = None,
        description: str | None = None,
        on_progress: ProgressFn | None = None,
    ) -> AnalysisResult:
        notify = on_progress or (lambda _msg: None)
        notify("Starting AI analysis...")
        prompt = build_user_prompt(company_name, sector, description)

        notify("Sending request to the model...")
        log.info("Starting analysis for %s (sector=%s)", company_name, sector)
        raw = await self.client.call(SYSTEM_PROMPT, prompt, max_tokens=self.max_tokens)

        notify("Parsing AI response...")
        result = validate_analysis(raw)
        notify("Analysis complete")
        log.info("Analysis for %s returned composite %s", company_name, result.composite_score)
        return result


def validate_analysis(raw: dict[str, Any]) -> AnalysisResult:
    try:
        return AnalysisResult.model_validate(raw)
    except ValidationError as exc:
        raise AnalysisValidationError(f"AI response failed validation: {exc.error_count()} error(s): "
                                      f"{exc.errors()[0]['msg']}") from exc


async def describe_company(client: LLMClient, name: str, sector: str | None = None) -> str:
    """Short business description for a company lacking one."""
    prompt = f"Describe what {name} does as a business."
    if sector:
        prompt += f" Sector: {sector}."
    raw = await client.call(DESCRIPTION_PROMPT, prompt, max_tokens=300)
    description = str(raw.get("description") or "").strip()
    if not description:
        raise LLMCallError(f"Empty description returned for {name}")
    return description
