"""
Engine error kinds.

Placed in a separate module so the engines, the collaborators and the
transport layer all raise and catch the same classes. Also holds
QueryResult, the return shape of read-only list queries.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for every error the engine surfaces to callers."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EngineError):
    """Missing/empty required input, or a drift item not in the expected state."""
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(EngineError):
    """Actor lacks membership in the workspace."""
    code = "FORBIDDEN"
    http_status = 403


class AlreadyDecidedError(EngineError):
    """Reconciliation item has already been applied or rejected."""
    code = "ALREADY_DECIDED"
    http_status = 409


class NoClausesError(EngineError):
    code = "NO_CLAUSES"
    http_status = 422


class FileParseError(EngineError):
    """Text extraction collaborator failed."""
    code = "FILE_PARSE_ERROR"
    http_status = 422


class AIParseError(EngineError):
    """AI parsing collaborator failed or returned unusable output."""
    code = "AI_PARSE_ERROR"
    http_status = 502


class InternalError(EngineError):
    code = "INTERNAL_ERROR"
    http_status = 500


@dataclass
class QueryResult:
    """
    Outcome of a read-only list query.

    A store failure yields empty items with ``error`` set, so callers can
    tell "no matches" apart from "query failed".
    """
    items: List[Any] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
