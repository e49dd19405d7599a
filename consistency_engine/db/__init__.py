"""
Database Package - SQLAlchemy record store
==========================================

Transactional record store for workspaces, clauses, variables, graph,
drift, reconciliation and audit records.
"""

from .models import (
    Base,
    User, Workspace, WorkspaceMember,
    Clause, Variable,
    GraphNode, GraphEdge, GraphState,
    DriftItem,
    ReconciliationSession, ReconciliationItem,
    AuditEvent,
    MemberRole, MemberStatus, ClauseType, VariableType, NodeType,
    DriftSeverity, DriftStatus, ConfidenceLevel, ReconciliationDecision,
    ReconciliationFileType, AuditEventType, ReasonCategory,
)
from .session import get_db, init_db, get_engine, reset_engine, atomic

__all__ = [
    # Base
    "Base",
    # Workspaces
    "User", "Workspace", "WorkspaceMember",
    # Document structure
    "Clause", "Variable",
    # Graph
    "GraphNode", "GraphEdge", "GraphState",
    # Drift
    "DriftItem",
    # Reconciliation
    "ReconciliationSession", "ReconciliationItem",
    # Audit
    "AuditEvent",
    # Enums
    "MemberRole", "MemberStatus", "ClauseType", "VariableType", "NodeType",
    "DriftSeverity", "DriftStatus", "ConfidenceLevel", "ReconciliationDecision",
    "ReconciliationFileType", "AuditEventType", "ReasonCategory",
    # Session
    "get_db", "init_db", "get_engine", "reset_engine", "atomic",
]
