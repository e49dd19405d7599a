"""
SQLAlchemy Models for Database
==============================

Schema for collaboratively edited loan-document workspaces:
- Users, workspaces and workspace membership
- Clauses and the variables extracted from them
- Derived relationship graph (nodes, edges, integrity state)
- Drift between approved baselines and the live draft
- Reconciliation sessions and AI-suggested items
- Append-only audit trail

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Enum, ForeignKey,
    UniqueConstraint, Index, JSON
)
from sqlalchemy import event
from sqlalchemy.orm import relationship, declarative_base
import uuid

from ..errors import InternalError

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class MemberRole(str, enum.Enum):
    """Role a member plays in a deal workspace"""
    AGENT = "agent"
    LEGAL = "legal"
    RISK = "risk"
    INVESTOR = "investor"


class MemberStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    REMOVED = "removed"


class ClauseType(str, enum.Enum):
    """Clause category"""
    FINANCIAL = "financial"
    COVENANT = "covenant"
    DEFINITION = "definition"
    CROSS_REFERENCE = "xref"
    GENERAL = "general"


class VariableType(str, enum.Enum):
    FINANCIAL = "financial"
    DEFINITION = "definition"
    COVENANT = "covenant"
    RATIO = "ratio"


class NodeType(str, enum.Enum):
    """Graph node type (clause categories minus general)"""
    FINANCIAL = "financial"
    COVENANT = "covenant"
    DEFINITION = "definition"
    CROSS_REFERENCE = "xref"


class DriftSeverity(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class DriftStatus(str, enum.Enum):
    """Drift lifecycle; every status except UNRESOLVED is terminal"""
    UNRESOLVED = "unresolved"
    OVERRIDDEN = "overridden"
    REVERTED = "reverted"
    APPROVED = "approved"


class ConfidenceLevel(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ReconciliationDecision(str, enum.Enum):
    """Item decision; APPLIED and REJECTED are terminal"""
    PENDING = "pending"
    APPLIED = "applied"
    REJECTED = "rejected"


class ReconciliationFileType(str, enum.Enum):
    DOCX = "docx"
    PDF = "pdf"


class AuditEventType(str, enum.Enum):
    """Audit event types written by the engines"""
    GRAPH_SYNC = "GRAPH_SYNC"
    DRIFT_RECOMPUTE = "DRIFT_RECOMPUTE"
    DRIFT_OVERRIDE = "DRIFT_OVERRIDE"
    DRIFT_REVERT = "DRIFT_REVERT"
    DRIFT_APPROVE = "DRIFT_APPROVE"
    RECON_UPLOAD = "RECON_UPLOAD"
    RECON_APPLY = "RECON_APPLY"
    RECON_REJECT = "RECON_REJECT"
    EXPORT_AUDIT = "EXPORT_AUDIT"


class ReasonCategory(str, enum.Enum):
    BORROWER_REQUEST = "borrower_request"
    MARKET_CONDITIONS = "market_conditions"
    CREDIT_UPDATE = "credit_update"
    LEGAL_REQUIREMENT = "legal_requirement"
    OTHER = "other"


# =============================================================================
# USERS & WORKSPACES
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    memberships = relationship("WorkspaceMember", back_populates="user", cascade="all, delete-orphan")


class Workspace(Base):
    """One deal's clauses, variables, graph, drift and reconciliation state"""
    __tablename__ = "workspaces"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    currency = Column(String(10), default="USD")
    created_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    governance_rules = Column(JSONB, default=dict)  # {publish_blocked_when_high_drift: bool, ...}
    created_at = Column(DateTime, default=datetime.utcnow)
    last_sync_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")
    clauses = relationship("Clause", back_populates="workspace", cascade="all, delete-orphan")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(Enum(MemberRole), default=MemberRole.INVESTOR, nullable=False)
    is_admin = Column(Boolean, default=False)
    status = Column(Enum(MemberStatus), default=MemberStatus.ACTIVE, nullable=False)
    invited_at = Column(DateTime, default=datetime.utcnow)
    joined_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_member_user_workspace"),
    )

    workspace = relationship("Workspace", back_populates="members")
    user = relationship("User", back_populates="memberships")


# =============================================================================
# DOCUMENT STRUCTURE
# =============================================================================

class Clause(Base):
    __tablename__ = "clauses"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    body = Column(Text, nullable=False, default="")
    type = Column(Enum(ClauseType), nullable=False)
    order = Column(Integer, nullable=False, default=0)
    is_sensitive = Column(Boolean, default=False)
    last_modified_at = Column(DateTime, default=datetime.utcnow)
    last_modified_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_clause_workspace_order", "workspace_id", "order"),
    )

    workspace = relationship("Workspace", back_populates="clauses")
    variables = relationship("Variable", back_populates="clause", cascade="all, delete-orphan")


class Variable(Base):
    """Value extracted from a clause; no baseline means it cannot drift"""
    __tablename__ = "variables"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    clause_id = Column(String(36), ForeignKey("clauses.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(255), nullable=False)
    type = Column(Enum(VariableType), nullable=False)
    value = Column(Text, nullable=False)
    unit = Column(String(50), nullable=True)
    baseline_value = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_modified_at = Column(DateTime, default=datetime.utcnow)
    last_modified_by = Column(String(36), nullable=True)

    __table_args__ = (
        Index("ix_variable_workspace", "workspace_id"),
        Index("ix_variable_clause", "clause_id"),
    )

    clause = relationship("Clause", back_populates="variables")

    @property
    def has_baseline(self) -> bool:
        return self.baseline_value is not None and self.baseline_value != ""

    @property
    def differs_from_baseline(self) -> bool:
        return self.has_baseline and self.value != self.baseline_value


# =============================================================================
# GRAPH
# =============================================================================

class GraphNode(Base):
    """Projection of a clause or variable; replaced wholesale on every rebuild"""
    __tablename__ = "graph_nodes"

    id = Column(String(80), primary_key=True)  # node-c-<clause_id> / node-v-<variable_id>
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(500), nullable=False)
    type = Column(Enum(NodeType), nullable=False)
    clause_id = Column(String(36), nullable=True)
    variable_id = Column(String(36), nullable=True)
    value = Column(Text, nullable=True)
    has_drift = Column(Boolean, default=False, nullable=False)
    has_warning = Column(Boolean, default=False, nullable=False)
    position = Column(Integer, default=0)  # build order within a rebuild batch
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_graph_node_workspace", "workspace_id"),
    )


class GraphEdge(Base):
    __tablename__ = "graph_edges"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    source_id = Column(String(80), nullable=False)
    target_id = Column(String(80), nullable=False)
    weight = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_graph_edge_workspace", "workspace_id"),
    )


class GraphState(Base):
    """Last computed integrity score; upserted, never deleted"""
    __tablename__ = "graph_state"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, unique=True)
    integrity_score = Column(Integer, nullable=False, default=100)
    last_computed_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# DRIFT
# =============================================================================

class DriftItem(Base):
    """Divergence between an approved baseline and the live value"""
    __tablename__ = "drift_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    clause_id = Column(String(36), nullable=False)
    variable_id = Column(String(36), nullable=True)
    title = Column(String(500), nullable=False)
    type = Column(Enum(ClauseType), nullable=False)
    severity = Column(Enum(DriftSeverity), nullable=False)
    baseline_value = Column(Text, nullable=False)
    baseline_approved_at = Column(DateTime, nullable=False)
    current_value = Column(Text, nullable=False)
    current_modified_at = Column(DateTime, nullable=False)
    current_modified_by = Column(String(36), nullable=False)
    status = Column(Enum(DriftStatus), default=DriftStatus.UNRESOLVED, nullable=False)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_drift_workspace_status", "workspace_id", "status"),
        Index("ix_drift_variable", "variable_id"),
    )


# =============================================================================
# RECONCILIATION
# =============================================================================

class ReconciliationSession(Base):
    """One upload; applied + rejected + pending == total at all times"""
    __tablename__ = "reconciliation_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_type = Column(Enum(ReconciliationFileType), nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow)
    uploaded_by = Column(String(36), nullable=False)
    total_items = Column(Integer, nullable=False, default=0)
    applied_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    pending_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("ReconciliationItem", back_populates="session", cascade="all, delete-orphan")


class ReconciliationItem(Base):
    """One AI-suggested change against the live draft"""
    __tablename__ = "reconciliation_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(36), ForeignKey("reconciliation_sessions.id", ondelete="CASCADE"), nullable=False)
    incoming_snippet = Column(Text, nullable=False, default="")
    change_description = Column(Text, nullable=True)
    target_clause_id = Column(String(36), nullable=False)
    target_variable_id = Column(String(36), nullable=True)
    confidence = Column(Enum(ConfidenceLevel), nullable=False)
    baseline_value = Column(Text, nullable=False)
    current_value = Column(Text, nullable=False)
    proposed_value = Column(Text, nullable=False)
    decision = Column(Enum(ReconciliationDecision), default=ReconciliationDecision.PENDING, nullable=False)
    decision_reason = Column(Text, nullable=True)
    decided_by = Column(String(36), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_recon_item_session", "session_id"),
    )

    session = relationship("ReconciliationSession", back_populates="items")


# =============================================================================
# AUDIT TRAIL
# =============================================================================

class AuditEvent(Base):
    """Immutable audit record; never updated or deleted once written"""
    __tablename__ = "audit_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    workspace_id = Column(String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    actor_id = Column(String(36), nullable=False)
    actor_name = Column(String(255), nullable=False)
    event_type = Column(Enum(AuditEventType), nullable=False)
    target_type = Column(String(50), nullable=True)
    target_id = Column(String(80), nullable=True)
    before_state = Column(Text, nullable=True)  # JSON text
    after_state = Column(Text, nullable=True)  # JSON text
    reason = Column(Text, nullable=True)
    reason_category = Column(Enum(ReasonCategory), nullable=True)

    __table_args__ = (
        Index("ix_audit_workspace_time", "workspace_id", "timestamp"),
        Index("ix_audit_target", "target_type", "target_id"),
    )


# =============================================================================
# IMMUTABILITY GUARDS
# =============================================================================

@event.listens_for(AuditEvent, "before_update")
def _audit_event_no_update(mapper, connection, target):
    raise InternalError("Audit events are immutable", {"audit_event_id": target.id})


@event.listens_for(AuditEvent, "before_delete")
def _audit_event_no_delete(mapper, connection, target):
    raise InternalError("Audit events cannot be deleted", {"audit_event_id": target.id})


@event.listens_for(DriftItem, "before_delete")
def _drift_item_no_delete(mapper, connection, target):
    raise InternalError("Drift items are never deleted", {"drift_id": target.id})
