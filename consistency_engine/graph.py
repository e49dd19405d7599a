"""
Graph Builder
=============

Derives the weighted relationship graph of a workspace from its clauses,
variables and unresolved drift, and scores its integrity.

The graph is a projection: project_graph() is a pure function of those
three inputs, and rebuild_graph() replaces the stored node/edge set with
its output in one transaction. mark_nodes_drifted() is the targeted patch
the reconciliation engine uses between rebuilds; a rebuild always wins.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .audit import record_event
from .db.models import (
    AuditEventType, Clause, ClauseType, DriftItem, DriftStatus, GraphEdge,
    GraphNode, GraphState, NodeType, Variable, VariableType, Workspace,
)
from .db.session import atomic
from .errors import NotFoundError
from .membership import Actor, require_workspace_access

logger = logging.getLogger(__name__)

CLAUSE_NODE_PREFIX = "node-c-"
VARIABLE_NODE_PREFIX = "node-v-"

DRIFT_PENALTY = 30
WARNING_PENALTY = 20

SAME_CLAUSE_VARIABLE_WEIGHT = 4

_NUMBERING_PREFIX = re.compile(r"^\d+\.\s*")

CLAUSE_NODE_TYPES = {
    ClauseType.FINANCIAL: NodeType.FINANCIAL,
    ClauseType.COVENANT: NodeType.COVENANT,
    ClauseType.DEFINITION: NodeType.DEFINITION,
    ClauseType.CROSS_REFERENCE: NodeType.CROSS_REFERENCE,
}

VARIABLE_NODE_TYPES = {
    VariableType.FINANCIAL: NodeType.FINANCIAL,
    VariableType.COVENANT: NodeType.COVENANT,
    VariableType.DEFINITION: NodeType.DEFINITION,
    VariableType.RATIO: NodeType.COVENANT,
}


@dataclass
class NodeSpec:
    id: str
    label: str
    type: NodeType
    clause_id: Optional[str] = None
    variable_id: Optional[str] = None
    value: Optional[str] = None
    has_drift: bool = False
    has_warning: bool = False

    @property
    def is_variable(self) -> bool:
        return self.variable_id is not None


@dataclass
class EdgeSpec:
    source_id: str
    target_id: str
    weight: int


@dataclass
class GraphProjection:
    nodes: List[NodeSpec] = field(default_factory=list)
    edges: List[EdgeSpec] = field(default_factory=list)

    @property
    def integrity_score(self) -> int:
        return compute_integrity_score(
            len(self.nodes),
            sum(1 for n in self.nodes if n.has_drift),
            sum(1 for n in self.nodes if n.has_warning),
        )


@dataclass
class GraphSyncResult:
    node_count: int
    edge_count: int
    integrity_score: int


@dataclass
class GraphView:
    nodes: List[GraphNode]
    edges: List[GraphEdge]
    integrity_score: int
    last_computed_at: Optional[datetime]


def _either(node_type: NodeType) -> Callable[[NodeSpec, NodeSpec], bool]:
    return lambda a, b: a.type == node_type or b.type == node_type


def _is_financial_covenant_pair(a: NodeSpec, b: NodeSpec) -> bool:
    return {a.type, b.type} == {NodeType.FINANCIAL, NodeType.COVENANT}


# Evaluated top to bottom, first match wins
EDGE_WEIGHT_RULES: List[Tuple[str, Callable[[NodeSpec, NodeSpec], bool], int]] = [
    ("variable-clause", lambda a, b: a.is_variable != b.is_variable, 5),
    ("same-type", lambda a, b: a.type == b.type, 4),
    ("financial-covenant", _is_financial_covenant_pair, 4),
    ("definition", _either(NodeType.DEFINITION), 3),
    ("cross-reference", _either(NodeType.CROSS_REFERENCE), 2),
]
DEFAULT_EDGE_WEIGHT = 3


def edge_weight(a: NodeSpec, b: NodeSpec) -> int:
    for _name, predicate, weight in EDGE_WEIGHT_RULES:
        if predicate(a, b):
            return weight
    return DEFAULT_EDGE_WEIGHT


def clauses_related(a: NodeSpec, b: NodeSpec) -> bool:
    """Clause pairs linked when either is a definition or cross-reference, or they pair financial with covenant."""
    linking = {NodeType.DEFINITION, NodeType.CROSS_REFERENCE}
    return a.type in linking or b.type in linking or _is_financial_covenant_pair(a, b)


def compute_integrity_score(total: int, drifted: int, warned: int) -> int:
    if total == 0:
        return 100
    raw = 100 - (drifted / total) * DRIFT_PENALTY - (warned / total) * WARNING_PENALTY
    # Half-up rounding, clamped to the 0-100 range
    return min(100, max(0, math.floor(raw + 0.5)))


def clause_node_id(clause_id: str) -> str:
    return f"{CLAUSE_NODE_PREFIX}{clause_id}"


def variable_node_id(variable_id: str) -> str:
    return f"{VARIABLE_NODE_PREFIX}{variable_id}"


def format_variable_value(value: Optional[str], unit: Optional[str]) -> Optional[str]:
    if unit:
        return f"{value} {unit}"
    return value


def strip_numbering(title: str) -> str:
    return _NUMBERING_PREFIX.sub("", title or "")


def project_graph(
    clauses: Sequence[Clause],
    variables: Sequence[Variable],
    unresolved_drift: Iterable[DriftItem],
) -> GraphProjection:
    """Build nodes and edges from the current workspace contents."""
    drifted_clauses = set()
    drifted_variables = set()
    for drift in unresolved_drift:
        drifted_clauses.add(drift.clause_id)
        if drift.variable_id:
            drifted_variables.add(drift.variable_id)

    projection = GraphProjection()
    clause_nodes: Dict[str, NodeSpec] = {}

    for clause in clauses:
        node_type = CLAUSE_NODE_TYPES.get(clause.type)
        if node_type is None:
            continue
        has_drift = clause.id in drifted_clauses
        node = NodeSpec(
            id=clause_node_id(clause.id),
            label=strip_numbering(clause.title),
            type=node_type,
            clause_id=clause.id,
            has_drift=has_drift,
            has_warning=bool(clause.is_sensitive) and has_drift,
        )
        clause_nodes[clause.id] = node
        projection.nodes.append(node)

    variables_by_clause: Dict[str, List[NodeSpec]] = {}
    for variable in variables:
        in_drift = variable.id in drifted_variables
        node = NodeSpec(
            id=variable_node_id(variable.id),
            label=variable.label,
            type=VARIABLE_NODE_TYPES[variable.type],
            clause_id=variable.clause_id,
            variable_id=variable.id,
            value=format_variable_value(variable.value, variable.unit),
            has_drift=in_drift or variable.differs_from_baseline,
            # Warnings come from drift records only, never from the raw value comparison
            has_warning=in_drift,
        )
        projection.nodes.append(node)
        variables_by_clause.setdefault(variable.clause_id, []).append(node)

        clause_node = clause_nodes.get(variable.clause_id)
        if clause_node is not None:
            projection.edges.append(EdgeSpec(node.id, clause_node.id, edge_weight(node, clause_node)))

    for a, b in combinations(clause_nodes.values(), 2):
        if clauses_related(a, b):
            projection.edges.append(EdgeSpec(a.id, b.id, edge_weight(a, b)))

    for siblings in variables_by_clause.values():
        for a, b in combinations(siblings, 2):
            projection.edges.append(EdgeSpec(a.id, b.id, SAME_CLAUSE_VARIABLE_WEIGHT))

    return projection


def _graph_summary(db: Session, workspace_id: str) -> Dict[str, Optional[int]]:
    state = db.query(GraphState).filter(GraphState.workspace_id == workspace_id).first()
    return {
        "node_count": db.query(GraphNode).filter(GraphNode.workspace_id == workspace_id).count(),
        "edge_count": db.query(GraphEdge).filter(GraphEdge.workspace_id == workspace_id).count(),
        "integrity_score": state.integrity_score if state else None,
    }


def lock_workspace(db: Session, workspace_id: str) -> Workspace:
    """Row-lock the workspace so recomputes of the same workspace serialize."""
    workspace = (
        db.query(Workspace)
        .filter(Workspace.id == workspace_id)
        .with_for_update()
        .first()
    )
    if not workspace:
        raise NotFoundError("Workspace not found", {"workspace_id": workspace_id})
    return workspace


def load_graph_inputs(db: Session, workspace_id: str):
    clauses = (
        db.query(Clause)
        .filter(Clause.workspace_id == workspace_id)
        .order_by(Clause.order.asc(), Clause.created_at.asc())
        .all()
    )
    variables = (
        db.query(Variable)
        .filter(Variable.workspace_id == workspace_id)
        .order_by(Variable.created_at.asc(), Variable.id.asc())
        .all()
    )
    drift = (
        db.query(DriftItem)
        .filter(
            DriftItem.workspace_id == workspace_id,
            DriftItem.status == DriftStatus.UNRESOLVED,
        )
        .all()
    )
    return clauses, variables, drift


def rebuild_graph(db: Session, actor: Actor, workspace_id: str) -> GraphSyncResult:
    """Replace the workspace's nodes and edges with a fresh projection."""
    require_workspace_access(db, workspace_id, actor)

    with atomic(db):
        workspace = lock_workspace(db, workspace_id)
        before = _graph_summary(db, workspace_id)
        projection = project_graph(*load_graph_inputs(db, workspace_id))
        score = projection.integrity_score
        now = datetime.utcnow()

        db.query(GraphEdge).filter(GraphEdge.workspace_id == workspace_id).delete(synchronize_session="fetch")
        db.query(GraphNode).filter(GraphNode.workspace_id == workspace_id).delete(synchronize_session="fetch")

        db.add_all([
            GraphNode(
                id=spec.id,
                workspace_id=workspace_id,
                label=spec.label,
                type=spec.type,
                clause_id=spec.clause_id,
                variable_id=spec.variable_id,
                value=spec.value,
                has_drift=spec.has_drift,
                has_warning=spec.has_warning,
                position=position,
            )
            for position, spec in enumerate(projection.nodes)
        ])
        db.add_all([
            GraphEdge(
                workspace_id=workspace_id,
                source_id=spec.source_id,
                target_id=spec.target_id,
                weight=spec.weight,
            )
            for spec in projection.edges
        ])

        state = db.query(GraphState).filter(GraphState.workspace_id == workspace_id).first()
        if state:
            state.integrity_score = score
            state.last_computed_at = now
        else:
            db.add(GraphState(workspace_id=workspace_id, integrity_score=score, last_computed_at=now))

        workspace.last_sync_at = now

        after = {
            "node_count": len(projection.nodes),
            "edge_count": len(projection.edges),
            "integrity_score": score,
        }
        record_event(
            db, actor, AuditEventType.GRAPH_SYNC,
            workspace_id=workspace_id,
            target_type="graph",
            target_id=workspace_id,
            before=before,
            after=after,
        )

    logger.info(
        f"Graph rebuilt for workspace {workspace_id}: "
        f"{after['node_count']} nodes, {after['edge_count']} edges, score {score}"
    )
    return GraphSyncResult(**after)


def mark_nodes_drifted(
    db: Session,
    workspace_id: str,
    clause_id: str,
    variable_id: Optional[str] = None,
    value: Optional[str] = None,
    unit: Optional[str] = None,
) -> int:
    """
    Flag stored nodes as drifted without a rebuild.

    Variable-level changes patch the variable node (and refresh its value);
    clause-level changes patch the clause node. Runs inside the caller's
    transaction. Returns the number of nodes touched.
    """
    if variable_id:
        values = {GraphNode.has_drift: True}
        if value is not None:
            values[GraphNode.value] = format_variable_value(value, unit)
        return (
            db.query(GraphNode)
            .filter(
                GraphNode.workspace_id == workspace_id,
                GraphNode.id == variable_node_id(variable_id),
            )
            .update(values, synchronize_session="fetch")
        )
    return (
        db.query(GraphNode)
        .filter(
            GraphNode.workspace_id == workspace_id,
            GraphNode.id == clause_node_id(clause_id),
        )
        .update({GraphNode.has_drift: True}, synchronize_session="fetch")
    )


# =============================================================================
# READ OPERATIONS
# =============================================================================

def get_graph(db: Session, actor: Actor, workspace_id: str) -> GraphView:
    require_workspace_access(db, workspace_id, actor)

    nodes = (
        db.query(GraphNode)
        .filter(GraphNode.workspace_id == workspace_id)
        .order_by(GraphNode.position.asc())
        .all()
    )
    edges = db.query(GraphEdge).filter(GraphEdge.workspace_id == workspace_id).all()
    state = db.query(GraphState).filter(GraphState.workspace_id == workspace_id).first()

    if state:
        score = state.integrity_score
    else:
        score = compute_integrity_score(
            len(nodes),
            sum(1 for n in nodes if n.has_drift),
            sum(1 for n in nodes if n.has_warning),
        )

    return GraphView(
        nodes=nodes,
        edges=edges,
        integrity_score=score,
        last_computed_at=state.last_computed_at if state else None,
    )


def get_node(db: Session, actor: Actor, node_id: str) -> GraphNode:
    node = db.query(GraphNode).filter(GraphNode.id == node_id).first()
    if not node:
        raise NotFoundError("Graph node not found", {"node_id": node_id})
    require_workspace_access(db, node.workspace_id, actor)
    return node


def locate_node(db: Session, actor: Actor, node_id: str) -> Dict[str, Optional[str]]:
    """Resolve a node back to the clause (and variable) it was projected from."""
    node = get_node(db, actor, node_id)

    if node.variable_id:
        variable = db.query(Variable).filter(Variable.id == node.variable_id).first()
        if variable:
            return {"node_id": node.id, "clause_id": variable.clause_id, "variable_id": variable.id}

    if node.clause_id:
        clause = db.query(Clause).filter(Clause.id == node.clause_id).first()
        if clause:
            return {"node_id": node.id, "clause_id": clause.id, "variable_id": None}

    raise NotFoundError("Node source no longer exists", {"node_id": node_id})


def get_connected_nodes(db: Session, actor: Actor, node_id: str) -> List[GraphNode]:
    node = get_node(db, actor, node_id)
    edges = (
        db.query(GraphEdge)
        .filter(
            GraphEdge.workspace_id == node.workspace_id,
            or_(GraphEdge.source_id == node_id, GraphEdge.target_id == node_id),
        )
        .all()
    )
    neighbor_ids = {e.target_id if e.source_id == node_id else e.source_id for e in edges}
    if not neighbor_ids:
        return []
    return (
        db.query(GraphNode)
        .filter(GraphNode.id.in_(neighbor_ids))
        .order_by(GraphNode.position.asc())
        .all()
    )
