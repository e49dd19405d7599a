"""
LLM Module
==========

AI document-parsing collaborator for reconciliation uploads.

Uses the OpenRouter API. Without OPENROUTER_API_KEY the parser is
disabled and uploads fail with AI_PARSE_ERROR.

Environment Variables:
- OPENROUTER_API_KEY: Required
- RECONCILIATION_MODEL: Model (default: google/gemini-2.5-flash)
- LLM_TIMEOUT, LLM_MAX_TOKENS, LLM_TEMPERATURE

Usage:
    from consistency_engine.llm import get_change_proposer

    proposer = get_change_proposer()
    proposal = await proposer.propose_changes(clauses, text, "markup.pdf", "pdf")
"""

from .openrouter_base import OpenRouterBaseClient, LLMCallResult, parse_json_robust
from .reconciler import (
    ChangeProposer,
    ClauseContext,
    VariableContext,
    OpenRouterChangeProposer,
    RECONCILIATION_SYSTEM_PROMPT,
    build_user_prompt,
    get_change_proposer,
)

__all__ = [
    # Base
    "OpenRouterBaseClient",
    "LLMCallResult",
    "parse_json_robust",
    # Reconciliation parser
    "ChangeProposer",
    "ClauseContext",
    "VariableContext",
    "OpenRouterChangeProposer",
    "RECONCILIATION_SYSTEM_PROMPT",
    "build_user_prompt",
    "get_change_proposer",
]
