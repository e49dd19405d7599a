"""
Drift Engine
============

Detects divergence between approved baselines and the live draft, and
manages the drift lifecycle:

    unresolved --override--> overridden   (baseline becomes current)
    unresolved --revert----> reverted     (current becomes baseline)
    unresolved --approve---> approved     (divergence accepted as-is)

Every resolved status is terminal. Resolved drift is never regenerated
for the same variable, even if its value moves again.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .audit import record_event
from .db.models import (
    AuditEventType, Clause, ClauseType, DriftItem, DriftSeverity, DriftStatus,
    ReasonCategory, Variable, Workspace,
)
from .db.session import atomic
from .errors import NotFoundError, QueryResult, ValidationError
from .graph import lock_workspace
from .membership import Actor, get_workspace_or_404, require_workspace_access
from .severity import classify

logger = logging.getLogger(__name__)

SEVERITY_RANK = {
    DriftSeverity.HIGH: 0,
    DriftSeverity.MEDIUM: 1,
    DriftSeverity.LOW: 2,
}

PUBLISH_BLOCK_RULE = "publish_blocked_when_high_drift"


def drift_title(clause: Clause, variable: Optional[Variable] = None) -> str:
    label = variable.label if variable is not None else clause.title
    return f"{label} Change"


def drift_snapshot(drift: DriftItem) -> Dict[str, Any]:
    return {
        "status": drift.status.value if drift.status else None,
        "severity": drift.severity.value if drift.severity else None,
        "baseline_value": drift.baseline_value,
        "current_value": drift.current_value,
    }


def find_unresolved_drift(
    db: Session,
    workspace_id: str,
    clause_id: str,
    variable_id: Optional[str] = None,
) -> Optional[DriftItem]:
    """Unresolved drift for a variable, or for a clause-level change when variable_id is None."""
    query = db.query(DriftItem).filter(
        DriftItem.workspace_id == workspace_id,
        DriftItem.status == DriftStatus.UNRESOLVED,
    )
    if variable_id:
        query = query.filter(DriftItem.variable_id == variable_id)
    else:
        query = query.filter(DriftItem.clause_id == clause_id, DriftItem.variable_id.is_(None))
    return query.order_by(DriftItem.created_at.asc()).first()


def upsert_unresolved_drift(
    db: Session,
    workspace: Workspace,
    clause: Clause,
    variable: Optional[Variable],
    baseline_value: str,
    current_value: str,
    modified_by: str,
    modified_at: Optional[datetime] = None,
    existing: Optional[DriftItem] = None,
) -> Tuple[DriftItem, bool]:
    """
    Update the unresolved drift in place, or create one.

    Severity is always graded against the owning clause's category.
    Returns (drift, created). Runs inside the caller's transaction.
    """
    severity = classify(clause.type, baseline_value, current_value)
    modified_at = modified_at or datetime.utcnow()

    if existing is not None:
        existing.current_value = current_value
        existing.current_modified_at = modified_at
        existing.current_modified_by = modified_by
        existing.severity = severity
        return existing, False

    drift = DriftItem(
        workspace_id=workspace.id,
        clause_id=clause.id,
        variable_id=variable.id if variable is not None else None,
        title=drift_title(clause, variable),
        type=clause.type,
        severity=severity,
        baseline_value=baseline_value,
        baseline_approved_at=workspace.created_at,
        current_value=current_value,
        current_modified_at=modified_at,
        current_modified_by=modified_by,
        status=DriftStatus.UNRESOLVED,
    )
    db.add(drift)
    return drift, True


def _count_unresolved(db: Session, workspace_id: str, severity: Optional[DriftSeverity] = None) -> int:
    query = db.query(DriftItem).filter(
        DriftItem.workspace_id == workspace_id,
        DriftItem.status == DriftStatus.UNRESOLVED,
    )
    if severity:
        query = query.filter(DriftItem.severity == severity)
    return query.count()


# =============================================================================
# RECOMPUTE
# =============================================================================

def recompute_drift(db: Session, actor: Actor, workspace_id: str) -> int:
    """
    Compare every variable against its baseline and materialize drift.

    Returns the number of unresolved drift items after the pass.
    """
    require_workspace_access(db, workspace_id, actor)

    with atomic(db):
        workspace = lock_workspace(db, workspace_id)

        clauses = {
            c.id: c
            for c in db.query(Clause).filter(Clause.workspace_id == workspace_id).all()
        }
        variables = (
            db.query(Variable)
            .filter(Variable.workspace_id == workspace_id)
            .order_by(Variable.created_at.asc(), Variable.id.asc())
            .all()
        )
        drift_by_variable: Dict[str, List[DriftItem]] = {}
        for drift in (
            db.query(DriftItem)
            .filter(DriftItem.workspace_id == workspace_id, DriftItem.variable_id.isnot(None))
            .all()
        ):
            drift_by_variable.setdefault(drift.variable_id, []).append(drift)

        created: List[DriftItem] = []
        updated: List[DriftItem] = []

        for variable in variables:
            if not variable.differs_from_baseline:
                continue
            history = drift_by_variable.get(variable.id, [])
            if any(d.status != DriftStatus.UNRESOLVED for d in history):
                continue
            clause = clauses.get(variable.clause_id)
            if clause is None:
                continue

            existing = next((d for d in history if d.status == DriftStatus.UNRESOLVED), None)
            previous = drift_snapshot(existing) if existing is not None else None
            drift, was_created = upsert_unresolved_drift(
                db, workspace, clause, variable,
                baseline_value=variable.baseline_value,
                current_value=variable.value,
                modified_by=variable.last_modified_by or actor.user_id,
                modified_at=variable.last_modified_at,
                existing=existing,
            )
            if was_created:
                created.append(drift)
            elif previous != drift_snapshot(drift):
                updated.append(drift)

        db.flush()
        unresolved = _count_unresolved(db, workspace_id)

        if created or updated:
            record_event(
                db, actor, AuditEventType.DRIFT_RECOMPUTE,
                workspace_id=workspace_id,
                target_type="workspace",
                target_id=workspace_id,
                after={
                    "created": [d.id for d in created],
                    "updated": [d.id for d in updated],
                    "unresolved_count": unresolved,
                },
            )

    logger.info(
        f"Drift recomputed for workspace {workspace_id}: "
        f"{len(created)} created, {len(updated)} updated, {unresolved} unresolved"
    )
    return unresolved


# =============================================================================
# RESOLUTION
# =============================================================================

def _resolve(
    db: Session,
    actor: Actor,
    drift_id: str,
    reason: Optional[str],
    reason_category: Union[ReasonCategory, str, None],
    new_status: DriftStatus,
    event_type: AuditEventType,
    build_changes: Callable[[DriftItem, datetime], Dict[Any, Any]],
    apply_to_variable: Optional[Callable[[Variable, DriftItem, datetime], None]] = None,
) -> DriftItem:
    drift = db.query(DriftItem).filter(DriftItem.id == drift_id).first()
    if not drift:
        raise NotFoundError("Drift item not found", {"drift_id": drift_id})
    require_workspace_access(db, drift.workspace_id, actor)

    if not reason or not reason.strip():
        raise ValidationError("A reason is required to resolve drift")

    if drift.status != DriftStatus.UNRESOLVED:
        raise ValidationError(
            f"Drift item is already {drift.status.value}",
            {"drift_id": drift_id, "status": drift.status.value},
        )

    with atomic(db):
        now = datetime.utcnow()
        before = drift_snapshot(drift)
        values = {
            DriftItem.status: new_status,
            DriftItem.approved_by: actor.user_id,
            DriftItem.approved_at: now,
            DriftItem.approval_reason: reason.strip(),
        }
        values.update(build_changes(drift, now))

        # Conditional on the pre-state so a concurrent resolution loses cleanly
        rowcount = (
            db.query(DriftItem)
            .filter(DriftItem.id == drift_id, DriftItem.status == DriftStatus.UNRESOLVED)
            .update(values, synchronize_session="fetch")
        )
        if rowcount == 0:
            raise ValidationError(
                "Drift item was resolved concurrently",
                {"drift_id": drift_id},
            )

        if apply_to_variable is not None and drift.variable_id:
            variable = db.query(Variable).filter(Variable.id == drift.variable_id).first()
            if variable is not None:
                apply_to_variable(variable, drift, now)

        record_event(
            db, actor, event_type,
            workspace_id=drift.workspace_id,
            target_type="drift_item",
            target_id=drift.id,
            before=before,
            after=drift_snapshot(drift),
            reason=reason.strip(),
            reason_category=reason_category,
        )

    db.refresh(drift)
    logger.info(f"Drift {drift_id} {new_status.value} by {actor.user_id}")
    return drift


def override_baseline(
    db: Session,
    actor: Actor,
    drift_id: str,
    reason: Optional[str],
    reason_category: Union[ReasonCategory, str, None] = None,
) -> DriftItem:
    """Accept the live value as the new approved baseline."""

    def changes(drift: DriftItem, now: datetime):
        return {
            DriftItem.baseline_value: drift.current_value,
            DriftItem.baseline_approved_at: now,
        }

    def to_variable(variable: Variable, drift: DriftItem, now: datetime):
        variable.baseline_value = drift.current_value

    return _resolve(
        db, actor, drift_id, reason, reason_category,
        DriftStatus.OVERRIDDEN, AuditEventType.DRIFT_OVERRIDE,
        changes, to_variable,
    )


def revert_draft(
    db: Session,
    actor: Actor,
    drift_id: str,
    reason: Optional[str],
    reason_category: Union[ReasonCategory, str, None] = None,
) -> DriftItem:
    """Restore the approved baseline into the live draft."""

    def changes(drift: DriftItem, now: datetime):
        return {
            DriftItem.current_value: drift.baseline_value,
            DriftItem.current_modified_at: now,
            DriftItem.current_modified_by: actor.user_id,
        }

    def to_variable(variable: Variable, drift: DriftItem, now: datetime):
        variable.value = drift.baseline_value
        variable.last_modified_at = now
        variable.last_modified_by = actor.user_id

    return _resolve(
        db, actor, drift_id, reason, reason_category,
        DriftStatus.REVERTED, AuditEventType.DRIFT_REVERT,
        changes, to_variable,
    )


def approve_drift(
    db: Session,
    actor: Actor,
    drift_id: str,
    reason: Optional[str],
    reason_category: Union[ReasonCategory, str, None] = None,
) -> DriftItem:
    """Accept the divergence without touching either value."""
    return _resolve(
        db, actor, drift_id, reason, reason_category,
        DriftStatus.APPROVED, AuditEventType.DRIFT_APPROVE,
        lambda drift, now: {},
    )


# =============================================================================
# QUERIES & GATING
# =============================================================================

def list_drift(
    db: Session,
    actor: Actor,
    workspace_id: str,
    severity: Optional[DriftSeverity] = None,
    clause_type: Optional[ClauseType] = None,
    status: Optional[DriftStatus] = None,
    keyword: Optional[str] = None,
) -> QueryResult:
    """Drift for a workspace, HIGH first, then most recently modified."""
    require_workspace_access(db, workspace_id, actor)
    try:
        query = db.query(DriftItem).filter(DriftItem.workspace_id == workspace_id)
        if severity:
            query = query.filter(DriftItem.severity == severity)
        if clause_type:
            query = query.filter(DriftItem.type == clause_type)
        if status:
            query = query.filter(DriftItem.status == status)
        if keyword:
            pattern = f"%{keyword}%"
            query = query.filter(or_(
                DriftItem.title.ilike(pattern),
                DriftItem.baseline_value.ilike(pattern),
                DriftItem.current_value.ilike(pattern),
            ))
        items = query.order_by(DriftItem.current_modified_at.desc()).all()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Drift query failed for workspace {workspace_id}: {e}")
        return QueryResult(items=[], error=str(e))

    # Stable sort keeps newest-first within each severity
    items.sort(key=lambda d: SEVERITY_RANK[d.severity])
    return QueryResult(items=items)


def get_drift(db: Session, actor: Actor, drift_id: str) -> DriftItem:
    drift = db.query(DriftItem).filter(DriftItem.id == drift_id).first()
    if not drift:
        raise NotFoundError("Drift item not found", {"drift_id": drift_id})
    require_workspace_access(db, drift.workspace_id, actor)
    return drift


def get_unresolved_high_drift_count(db: Session, actor: Actor, workspace_id: str) -> int:
    require_workspace_access(db, workspace_id, actor)
    return _count_unresolved(db, workspace_id, DriftSeverity.HIGH)


def is_publish_blocked(db: Session, actor: Actor, workspace_id: str) -> bool:
    """Publishing is blocked while HIGH drift is unresolved, unless governance turns the rule off."""
    require_workspace_access(db, workspace_id, actor)
    workspace = get_workspace_or_404(db, workspace_id)
    rules = workspace.governance_rules or {}
    if not rules.get(PUBLISH_BLOCK_RULE, True):
        return False
    return _count_unresolved(db, workspace_id, DriftSeverity.HIGH) > 0
