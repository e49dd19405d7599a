"""
Pydantic Schemas for the Consistency Engine
===========================================

Request/response models for the HTTP layer, built from ORM rows with
from_attributes, plus the validated shape of AI reconciliation output.

The AI output is untrusted: ReconciliationProposal validates its
structure, and the reconciliation engine separately checks that every
referenced clause/variable exists.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from datetime import datetime

from .db.models import (
    ClauseType, ConfidenceLevel, DriftSeverity, DriftStatus, NodeType,
    ReasonCategory, ReconciliationDecision, ReconciliationFileType,
)


# =============================================================================
# AI RECONCILIATION OUTPUT
# =============================================================================

class ReconciliationSuggestion(BaseModel):
    """One change the AI parser proposes against the live draft"""
    incoming_snippet: str = Field("", alias="incomingSnippet", description="Text from the incoming document showing the change")
    target_clause_id: str = Field(..., alias="targetClauseId", description="ID of the clause the change applies to")
    target_variable_id: Optional[str] = Field(None, alias="targetVariableId", description="ID of the variable, if any")
    confidence: ConfidenceLevel = Field(..., description="HIGH, MEDIUM or LOW")
    baseline_value: str = Field("", alias="baselineValue")
    current_value: str = Field("", alias="currentValue")
    proposed_value: str = Field(..., alias="proposedValue")
    change_description: Optional[str] = Field(None, alias="changeDescription")

    class Config:
        populate_by_name = True

    @field_validator("confidence", mode="before")
    @classmethod
    def _upper_confidence(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("baseline_value", "current_value", "proposed_value", "incoming_snippet", mode="before")
    @classmethod
    def _stringify(cls, v):
        # Models sometimes emit bare numbers for numeric terms
        if v is None:
            return ""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("target_variable_id", mode="before")
    @classmethod
    def _blank_variable_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class ReconciliationProposal(BaseModel):
    """Full AI parser response"""
    suggestions: List[ReconciliationSuggestion] = Field(default_factory=list)
    summary: Optional[str] = None
    parsing_confidence: Optional[float] = Field(None, alias="parsingConfidence")

    class Config:
        populate_by_name = True


# =============================================================================
# GRAPH
# =============================================================================

class GraphNodeResponse(BaseModel):
    id: str
    label: str
    type: NodeType
    clause_id: Optional[str] = None
    variable_id: Optional[str] = None
    value: Optional[str] = None
    has_drift: bool = False
    has_warning: bool = False

    class Config:
        from_attributes = True


class GraphEdgeResponse(BaseModel):
    id: str
    source_id: str
    target_id: str
    weight: int

    class Config:
        from_attributes = True


class GraphResponse(BaseModel):
    """Stored graph for a workspace"""
    nodes: List[GraphNodeResponse]
    edges: List[GraphEdgeResponse]
    integrity_score: int = Field(..., ge=0, le=100)
    last_computed_at: Optional[datetime] = None


class GraphSyncResponse(BaseModel):
    node_count: int
    edge_count: int
    integrity_score: int = Field(..., ge=0, le=100)


class NodeLocationResponse(BaseModel):
    node_id: str
    clause_id: str
    variable_id: Optional[str] = None


# =============================================================================
# DRIFT
# =============================================================================

class DriftItemResponse(BaseModel):
    id: str
    workspace_id: str
    clause_id: str
    variable_id: Optional[str] = None
    title: str
    type: ClauseType
    severity: DriftSeverity
    baseline_value: str
    baseline_approved_at: datetime
    current_value: str
    current_modified_at: datetime
    current_modified_by: str
    status: DriftStatus
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_reason: Optional[str] = None

    class Config:
        from_attributes = True


class DriftListResponse(BaseModel):
    items: List[DriftItemResponse]
    error: Optional[str] = None


class DriftResolutionRequest(BaseModel):
    """Override, revert or approve a drift item"""
    reason: Optional[str] = Field(None, description="Why the drift is being resolved (required)")
    reason_category: Optional[ReasonCategory] = Field(None, description="Optional reason category")


class DriftRecomputeResponse(BaseModel):
    unresolved_count: int


class HighDriftCountResponse(BaseModel):
    count: int


class PublishBlockedResponse(BaseModel):
    blocked: bool
    unresolved_high_count: int


# =============================================================================
# RECONCILIATION
# =============================================================================

class ReconciliationSessionResponse(BaseModel):
    id: str
    workspace_id: str
    file_name: str
    file_type: ReconciliationFileType
    uploaded_at: datetime
    uploaded_by: str
    total_items: int
    applied_count: int
    rejected_count: int
    pending_count: int

    class Config:
        from_attributes = True


class ReconciliationItemResponse(BaseModel):
    id: str
    session_id: str
    incoming_snippet: str
    change_description: Optional[str] = None
    target_clause_id: str
    target_variable_id: Optional[str] = None
    confidence: ConfidenceLevel
    baseline_value: str
    current_value: str
    proposed_value: str
    decision: ReconciliationDecision
    decision_reason: Optional[str] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    items: List[ReconciliationSessionResponse]
    error: Optional[str] = None


class ItemListResponse(BaseModel):
    items: List[ReconciliationItemResponse]
    error: Optional[str] = None


class UploadResponse(BaseModel):
    session: ReconciliationSessionResponse
    items: List[ReconciliationItemResponse]
    summary: Optional[str] = None


class DecisionRequest(BaseModel):
    """Apply or reject a reconciliation item"""
    reason: Optional[str] = Field(None, description="Optional rationale")
    reason_category: Optional[ReasonCategory] = None


class ApplyItemResponse(BaseModel):
    item: ReconciliationItemResponse
    drift_created: bool


class RejectItemResponse(BaseModel):
    item: ReconciliationItemResponse


# =============================================================================
# AUDIT
# =============================================================================

class AuditEventResponse(BaseModel):
    id: str
    workspace_id: Optional[str] = None
    timestamp: datetime
    actor_id: str
    actor_name: str
    event_type: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    reason_category: Optional[str] = None


class AuditListResponse(BaseModel):
    items: List[AuditEventResponse]
    error: Optional[str] = None


# =============================================================================
# ERRORS
# =============================================================================

class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: ErrorBody
