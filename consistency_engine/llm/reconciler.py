"""
Reconciliation Parser LLM Client
================================

Compares an incoming markup/amendment document against the workspace's
structured clauses and proposes changes mapped to clause/variable IDs.

The output is untrusted: it is schema-validated here, and the
reconciliation engine drops suggestions whose references do not exist.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as SchemaValidationError

from ..config import get_settings
from ..db.models import Clause, ClauseType, VariableType
from ..errors import AIParseError
from ..schemas import ReconciliationProposal
from .openrouter_base import OpenRouterBaseClient, parse_json_robust

logger = logging.getLogger(__name__)


RECONCILIATION_SYSTEM_PROMPT = """You are a legal document reconciliation expert specializing in loan agreements and financial documents. Compare an existing structured loan agreement with an incoming markup or amendment document and extract every proposed change.

You receive:
- the current agreement as JSON: clauses with their variables (amounts, rates, covenants, defined terms)
- the text of the incoming markup document

For each proposed change:
1. incomingSnippet: the exact text from the incoming document that shows the change
2. targetClauseId: the ID of the matching clause; it MUST be copied exactly from the current agreement
3. targetVariableId: the ID of the affected variable, when the change is to a specific variable
4. confidence:
   - HIGH: explicit numeric change with clear before/after values
   - MEDIUM: wording changes that likely represent a change
   - LOW: inferred changes or uncertain mapping
5. baselineValue: the approved value in the current agreement
   currentValue: the current draft value (may equal the baseline)
   proposedValue: the new value proposed by the markup
6. changeDescription: optional one-line explanation

Rules:
- Only include changes that map to existing clauses/variables; never invent IDs
- For numeric values, extract the number as written in the variable (e.g. "5.5", not "5.5% per annum")
- For text changes, give the full proposed text as proposedValue
- Be conservative with HIGH confidence

Respond with JSON only:
{
  "suggestions": [
    {
      "incomingSnippet": "...",
      "targetClauseId": "...",
      "targetVariableId": "... or null",
      "confidence": "HIGH|MEDIUM|LOW",
      "baselineValue": "...",
      "currentValue": "...",
      "proposedValue": "...",
      "changeDescription": "..."
    }
  ],
  "summary": "short overview of the markup",
  "parsingConfidence": 0.0-1.0
}

If the document proposes no changes, return {"suggestions": []}."""


@dataclass
class VariableContext:
    """Detached copy of a variable, safe to use after the read transaction ends"""
    id: str
    label: str
    type: VariableType
    value: Optional[str]
    unit: Optional[str]
    baseline_value: Optional[str]


@dataclass
class ClauseContext:
    """Detached copy of a clause and its variables"""
    id: str
    title: str
    body: str
    type: ClauseType
    order: int
    variables: List[VariableContext] = field(default_factory=list)

    @classmethod
    def from_clause(cls, clause: Clause) -> "ClauseContext":
        return cls(
            id=clause.id,
            title=clause.title,
            body=clause.body,
            type=clause.type,
            order=clause.order,
            variables=[
                VariableContext(
                    id=v.id,
                    label=v.label,
                    type=v.type,
                    value=v.value,
                    unit=v.unit,
                    baseline_value=v.baseline_value,
                )
                for v in clause.variables
            ],
        )


def truncate_body(body: str, limit: int) -> str:
    body = body or ""
    if len(body) > limit:
        return body[:limit] + "..."
    return body


def build_document_context(clauses: Sequence[ClauseContext], body_limit: int) -> List[Dict[str, Any]]:
    """Structured view of the live draft sent to the model"""
    return [
        {
            "id": c.id,
            "title": c.title,
            "body": truncate_body(c.body, body_limit),
            "type": c.type.value,
            "order": c.order,
            "variables": [
                {
                    "id": v.id,
                    "label": v.label,
                    "type": v.type.value,
                    "value": v.value,
                    "unit": v.unit,
                    "baselineValue": v.baseline_value,
                }
                for v in c.variables
            ],
        }
        for c in clauses
    ]


def build_user_prompt(
    clauses: Sequence[ClauseContext],
    incoming_text: str,
    file_name: str,
    file_kind: str,
    body_limit: int,
) -> str:
    current_doc = json.dumps(build_document_context(clauses, body_limit), ensure_ascii=False, indent=2)
    return (
        f"CURRENT LOAN AGREEMENT STRUCTURE:\n{current_doc}\n\n"
        f"INCOMING MARKUP DOCUMENT:\nFile: {file_name} ({file_kind})\n\n"
        f"Content:\n{incoming_text}\n\n"
        "---\n"
        "Extract ALL proposed changes and map each one to a clause and variable "
        "of the current agreement. Return valid JSON."
    )


class ChangeProposer(ABC):
    """AI document-parsing collaborator"""

    @abstractmethod
    async def propose_changes(
        self,
        clauses: Sequence[ClauseContext],
        incoming_text: str,
        file_name: str,
        file_kind: str,
    ) -> ReconciliationProposal:
        """
        Propose changes from incoming_text against the live clauses.

        Raises:
            AIParseError: when the model cannot be reached or its output is unusable
        """


class OpenRouterChangeProposer(ChangeProposer):
    """
    Change proposer backed by an OpenRouter chat model.

    Disabled (every call fails with AIParseError) when no API key is set.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        settings = get_settings()
        api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.model = model or settings.reconciliation_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.body_limit = settings.clause_body_preview_chars
        self.enabled = bool(api_key)

        if self.enabled:
            self.client = OpenRouterBaseClient(
                api_key=api_key,
                model=self.model,
                timeout=settings.llm_timeout,
                base_url=settings.openrouter_base_url,
            )
            logger.info(f"Reconciliation parser initialized with model: {self.model}")
        else:
            self.client = None
            logger.warning("Reconciliation parser disabled: OPENROUTER_API_KEY not set")

    async def close(self):
        """Close the client"""
        if self.client:
            await self.client.close()

    async def propose_changes(
        self,
        clauses: Sequence[ClauseContext],
        incoming_text: str,
        file_name: str,
        file_kind: str,
    ) -> ReconciliationProposal:
        if not self.enabled:
            raise AIParseError("AI reconciliation parser is not configured")

        messages = [
            {"role": "system", "content": RECONCILIATION_SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(
                clauses, incoming_text, file_name, file_kind, self.body_limit,
            )},
        ]

        result = await self.client.call(
            messages=messages,
            response_format={"type": "json_object"},
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not result.success:
            logger.error(f"Reconciliation parser call failed: {result.error}")
            raise AIParseError("AI reconciliation parser call failed", {"error": result.error})

        data, ok, error = parse_json_robust(result.content)
        if not ok:
            logger.error(f"Reconciliation parser returned invalid JSON: {error}")
            raise AIParseError("AI reconciliation parser returned invalid JSON", {"error": error})

        try:
            proposal = ReconciliationProposal.model_validate(data)
        except SchemaValidationError as e:
            logger.error(f"Reconciliation parser output failed validation: {e.error_count()} errors")
            raise AIParseError(
                "AI reconciliation parser output failed validation",
                {"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        logger.info(
            f"Reconciliation parser proposed {len(proposal.suggestions)} changes "
            f"({result.output_tokens} output tokens)"
        )
        return proposal


_proposer: Optional[OpenRouterChangeProposer] = None


def get_change_proposer() -> ChangeProposer:
    """Get singleton change proposer"""
    global _proposer
    if _proposer is None:
        _proposer = OpenRouterChangeProposer()
    return _proposer
