"""Tests for the LLM client wrapper, response validation and CompanyAnalyzer."""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from airisk.analyzer import (
    CompanyAnalyzer,
    LLMClient,
    build_user_prompt,
    describe_company,
    parse_json_object,
    validate_analysis,
)
from airisk.errors import AnalysisValidationError, LLMCallError
from airisk.tests.helpers import make_analysis


def _mock_client(payload=None, model="mock-model"):
    client = MagicMock()
    client.model = model
    client.call = AsyncMock(return_value=payload)
    return client


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


class TestParseJsonObject:
    def test_plain(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert parse_json_object('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_invalid(self):
        with pytest.raises(LLMCallError) as exc_info:
            parse_json_object("not json at all")
        assert exc_info.value.retryable is False

    def test_not_an_object(self):
        with pytest.raises(LLMCallError):
            parse_json_object("[1, 2]")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateAnalysis:
    def test_valid_payload(self):
        result = validate_analysis(make_analysis("Acme"))
        assert result.company_name == "Acme"
        assert [d.domain_number for d in result.domains] == [1, 2, 3, 4]
        assert result.domain_summaries[2] == "Moats summary for Acme"

    def test_ratings_normalized(self):
        raw = make_analysis("Acme")
        raw["domains"][0]["overall_rating"] = "HIGH"
        raw["domains"][0]["questions"][0]["rating"] = " Medium "
        raw["domains"][0]["questions"][0]["confidence"] = "Low"
        result = validate_analysis(raw)
        assert result.domains[0].overall_rating == "high"
        assert result.domains[0].questions[0].rating == "medium"
        assert result.domains[0].questions[0].confidence == "low"

    def test_three_domains_rejected(self):
        raw = make_analysis("Acme")
        raw["domains"] = raw["domains"][:3]
        with pytest.raises(AnalysisValidationError):
            validate_analysis(raw)

    def test_duplicate_domain_rejected(self):
        raw = make_analysis("Acme")
        raw["domains"][3]["domain_number"] = 1
        with pytest.raises(AnalysisValidationError):
            validate_analysis(raw)

    def test_unknown_rating_rejected(self):
        raw = make_analysis("Acme")
        raw["domains"][1]["questions"][0]["rating"] = "extreme"
        with pytest.raises(AnalysisValidationError):
            validate_analysis(raw)

    def test_composite_out_of_range(self):
        raw = make_analysis("Acme")
        raw["composite_score"] = 11
        with pytest.raises(AnalysisValidationError):
            validate_analysis(raw)

    def test_missing_narrative(self):
        raw = make_analysis("Acme")
        del raw["narrative"]
        with pytest.raises(AnalysisValidationError):
            validate_analysis(raw)


# ---------------------------------------------------------------------------
# CompanyAnalyzer
# ---------------------------------------------------------------------------


class TestCompanyAnalyzer:
    @pytest.mark.asyncio
    async def test_analyze_reports_progress(self):
        client = _mock_client(make_analysis("Acme"))
        messages: list[str] = []

        result = await CompanyAnalyzer(client).analyze("Acme", "AdTech", "Ad platform", on_progress=messages.append)

        assert result.company_name == "Acme"
        assert messages == [
            "Starting AI analysis...", "Sending request to the model...", "Parsing AI response...", "Analysis complete",
        ]
        _, prompt = client.call.await_args.args
        assert "Sector: AdTech" in prompt
        assert "Description: Ad platform" in prompt

    @pytest.mark.asyncio
    async def test_invalid_response_raises(self):
        client = _mock_client({"company_name": "Acme"})
        with pytest.raises(AnalysisValidationError):
            await CompanyAnalyzer(client).analyze("Acme")

    def test_model_comes_from_client(self):
        assert CompanyAnalyzer(_mock_client(model="claude-test")).model == "claude-test"

    def test_prompt_lists_every_question(self):
        prompt = build_user_prompt("Acme")
        for key in ("durability_of_use_case", "pricing_model", "tech_debt", "ai_native_startups"):
            assert f'question_key: "{key}"' in prompt
        assert "Sector:" not in prompt


class TestDescribeCompany:
    @pytest.mark.asyncio
    async def test_returns_description(self):
        client = _mock_client({"description": "  Makes ad software.  "})
        assert await describe_company(client, "Acme", "AdTech") == "Makes ad software."

    @pytest.mark.asyncio
    async def test_empty_description(self):
        with pytest.raises(LLMCallError):
            await describe_company(_mock_client({"description": ""}), "Acme")


# ---------------------------------------------------------------------------
# LLMClient
# ---------------------------------------------------------------------------


class TestLLMClient:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="nope")

    def test_defaults(self):
        assert LLMClient(provider="anthropic", api_key="test").model == "claude-sonnet-4-5-20250929"
        client = LLMClient(provider="openai", api_key="test")
        assert client.model == "gpt-4o-mini"
        assert client.supports_web_search is False

    @pytest.mark.asyncio
    async def test_anthropic_text_blocks_and_web_search(self):
        client = LLMClient(provider="anthropic", api_key="test", model="claude-test")
        response = SimpleNamespace(
            content=[
                SimpleNamespace(type="text", text="Searching..."),
                SimpleNamespace(type="server_tool_use"),
                SimpleNamespace(type="text", text='{"alerts": []}'),
            ],
            stop_reason="end_turn",
        )
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(return_value=response)

        blocks = await client.complete("system", "user", max_tokens=100, web_search_uses=3)

        assert blocks == ["Searching...", '{"alerts": []}']
        kwargs = client._client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["tools"][0]["max_uses"] == 3

    @pytest.mark.asyncio
    async def test_openai_call_parses_json(self):
        client = LLMClient(provider="openai", api_key="test")
        message = SimpleNamespace(content=json.dumps({"description": "x"}))
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(
            return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]),
        )

        assert await client.call("system", "user") == {"description": "x"}
        kwargs = client._client.chat.completions.create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_api_failure_is_retryable(self):
        client = LLMClient(provider="anthropic", api_key="test")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(side_effect=ConnectionError("reset"))
        with pytest.raises(LLMCallError) as exc_info:
            await client.complete("system", "user")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_no_text_blocks(self):
        client = LLMClient(provider="anthropic", api_key="test")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(type="server_tool_use")], stop_reason="max_tokens"),
        )
        with pytest.raises(LLMCallError):
            await client.complete("system", "user")
