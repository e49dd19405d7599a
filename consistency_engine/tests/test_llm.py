"""
Reconciliation Parser (LLM) Tests

The OpenRouter transport is mocked; these cover prompt building, output
parsing and validation, and failure mapping.
"""

import json
from unittest.mock import AsyncMock

import pytest

from consistency_engine.db.models import Clause, ClauseType, ConfidenceLevel, Variable, VariableType
from consistency_engine.errors import AIParseError
from consistency_engine.llm import (
    LLMCallResult,
    OpenRouterBaseClient,
    OpenRouterChangeProposer,
    build_user_prompt,
    parse_json_robust,
)
from consistency_engine.schemas import ReconciliationProposal, ReconciliationSuggestion


def _clauses():
    clause = Clause(
        id="clause-1", title="1. Facility Amount", body="x" * 800,
        type=ClauseType.FINANCIAL, order=1,
    )
    clause.variables = [
        Variable(
            id="var-1", clause_id="clause-1", label="Facility Amount",
            type=VariableType.FINANCIAL, value="$1,000,000", baseline_value="$1,000,000",
        )
    ]
    return [clause]


def _proposer_returning(content, success=True, error=None):
    proposer = OpenRouterChangeProposer(api_key="test-key", model="test/model")
    proposer.client.call = AsyncMock(return_value=LLMCallResult(
        content=content, model="test/model", success=success, error=error,
    ))
    return proposer


# =============================================================================
# JSON parsing
# =============================================================================

class TestParseJsonRobust:
    def test_plain_json(self):
        data, ok, error = parse_json_robust('{"suggestions": []}')
        assert ok and data == {"suggestions": []} and error == ""

    def test_markdown_fence(self):
        data, ok, _ = parse_json_robust('```json\n{"summary": "none"}\n```')
        assert ok and data == {"summary": "none"}

    def test_prefix_text(self):
        data, ok, _ = parse_json_robust('Here you go: {"suggestions": [{"a": 1}]} thanks')
        assert ok and data == {"suggestions": [{"a": 1}]}

    def test_empty(self):
        data, ok, error = parse_json_robust("")
        assert data is None and not ok and error == "Empty content"

    def test_no_object(self):
        data, ok, _ = parse_json_robust("I could not find any changes.")
        assert data is None and not ok


# =============================================================================
# Output schema
# =============================================================================

def test_suggestion_normalizes_model_output():
    suggestion = ReconciliationSuggestion.model_validate({
        "targetClauseId": "clause-1",
        "targetVariableId": "  ",
        "confidence": " medium ",
        "baselineValue": 5,
        "proposedValue": 5.5,
    })
    assert suggestion.confidence == ConfidenceLevel.MEDIUM
    assert suggestion.target_variable_id is None
    assert suggestion.baseline_value == "5"
    assert suggestion.proposed_value == "5.5"
    assert suggestion.current_value == ""


def test_suggestion_rejects_unknown_confidence():
    with pytest.raises(ValueError):
        ReconciliationSuggestion.model_validate({
            "targetClauseId": "clause-1", "confidence": "CERTAIN", "proposedValue": "1",
        })


def test_proposal_defaults():
    proposal = ReconciliationProposal.model_validate({"parsingConfidence": 0.4})
    assert proposal.suggestions == []
    assert proposal.parsing_confidence == 0.4


# =============================================================================
# Prompt
# =============================================================================

def test_user_prompt_carries_ids_and_truncates_bodies():
    prompt = build_user_prompt(_clauses(), "Facility Amount: $1,200,000", "markup.pdf", "pdf", body_limit=500)

    assert "markup.pdf (pdf)" in prompt
    assert "Facility Amount: $1,200,000" in prompt
    structure = prompt.split("CURRENT LOAN AGREEMENT STRUCTURE:\n", 1)[1].split("\n\nINCOMING MARKUP DOCUMENT:", 1)[0]
    clauses = json.loads(structure)
    assert clauses[0]["id"] == "clause-1"
    assert clauses[0]["body"] == "x" * 500 + "..."
    assert clauses[0]["variables"][0]["id"] == "var-1"
    assert clauses[0]["variables"][0]["baselineValue"] == "$1,000,000"


# =============================================================================
# Proposer
# =============================================================================

@pytest.mark.asyncio
async def test_disabled_proposer_raises():
    proposer = OpenRouterChangeProposer(api_key="")
    assert proposer.enabled is False
    with pytest.raises(AIParseError):
        await proposer.propose_changes(_clauses(), "text", "markup.pdf", "pdf")


@pytest.mark.asyncio
async def test_proposer_parses_model_output():
    content = json.dumps({
        "suggestions": [{
            "incomingSnippet": "Facility Amount: $1,200,000",
            "targetClauseId": "clause-1",
            "targetVariableId": "var-1",
            "confidence": "HIGH",
            "baselineValue": "$1,000,000",
            "currentValue": "$1,000,000",
            "proposedValue": "$1,200,000",
        }],
        "summary": "Upsize",
    })
    proposer = _proposer_returning(f"```json\n{content}\n```")

    proposal = await proposer.propose_changes(_clauses(), "Facility Amount: $1,200,000", "markup.pdf", "pdf")

    assert proposal.summary == "Upsize"
    assert len(proposal.suggestions) == 1
    assert proposal.suggestions[0].proposed_value == "$1,200,000"

    kwargs = proposer.client.call.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0]["role"] == "system"
    assert "clause-1" in kwargs["messages"][1]["content"]


@pytest.mark.asyncio
async def test_proposer_transport_failure():
    proposer = _proposer_returning("", success=False, error="HTTP 503: unavailable")
    with pytest.raises(AIParseError) as exc_info:
        await proposer.propose_changes(_clauses(), "text", "markup.pdf", "pdf")
    assert exc_info.value.details["error"] == "HTTP 503: unavailable"


@pytest.mark.asyncio
async def test_proposer_invalid_json():
    proposer = _proposer_returning("Sorry, I cannot help with that.")
    with pytest.raises(AIParseError):
        await proposer.propose_changes(_clauses(), "text", "markup.pdf", "pdf")


@pytest.mark.asyncio
async def test_proposer_schema_violation():
    proposer = _proposer_returning(json.dumps({"suggestions": [{"confidence": "HIGH"}]}))
    with pytest.raises(AIParseError) as exc_info:
        await proposer.propose_changes(_clauses(), "text", "markup.pdf", "pdf")
    assert exc_info.value.details["errors"]


@pytest.mark.asyncio
async def test_base_client_without_key_does_not_call_out():
    client = OpenRouterBaseClient(api_key="", model="test/model")
    result = await client.call([{"role": "user", "content": "hi"}])
    assert result.success is False
    assert result.error == "API key not configured"
    assert client.completions_url == "https://openrouter.ai/api/v1/chat/completions"
