"""
Reconciliation Engine
=====================

Matches an externally supplied document against the live draft and
merges the AI-suggested edits a user accepts.

Upload:  extract text -> propose changes (AI) -> drop unknown references
         -> one session + one item per surviving suggestion
Apply:   pending -> applied; writes the variable, materializes drift when
         the proposal departs from the baseline, patches graph nodes
Reject:  pending -> rejected; no value or drift change

Decisions are terminal. Session counters move in the same transaction as
the decision they summarize, so applied + rejected + pending == total.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .audit import record_event
from .config import get_settings
from .db.models import (
    AuditEventType, Clause, ConfidenceLevel, ReasonCategory,
    ReconciliationDecision, ReconciliationFileType, ReconciliationItem,
    ReconciliationSession, Variable,
)
from .db.session import atomic
from .drift import find_unresolved_drift, upsert_unresolved_drift
from .errors import (
    AIParseError, AlreadyDecidedError, EngineError, FileParseError,
    NoClausesError, NotFoundError, QueryResult, ValidationError,
)
from .graph import mark_nodes_drifted
from .ingest import ParserError, detect_file_kind, extract_text
from .llm import ChangeProposer, ClauseContext, get_change_proposer
from .membership import Actor, get_workspace_or_404, require_workspace_access, validate_actor
from .schemas import ReconciliationSuggestion

logger = logging.getLogger(__name__)

CONFIDENCE_RANK = {
    ConfidenceLevel.HIGH: 0,
    ConfidenceLevel.MEDIUM: 1,
    ConfidenceLevel.LOW: 2,
}

TextExtractor = Callable[[bytes, str, Optional[str]], str]


@dataclass
class UploadResult:
    session: ReconciliationSession
    items: List[ReconciliationItem] = field(default_factory=list)
    discarded_count: int = 0
    summary: Optional[str] = None


@dataclass
class ApplyResult:
    item: ReconciliationItem
    drift_created: bool


def validate_suggestion_references(
    suggestions: Sequence[ReconciliationSuggestion],
    clauses: Sequence[ClauseContext],
) -> Tuple[List[ReconciliationSuggestion], int]:
    """
    Keep only suggestions whose clause (and variable, if given) exist.

    Returns (valid suggestions, number discarded).
    """
    clause_ids = {c.id for c in clauses}
    variable_ids = {v.id for c in clauses for v in c.variables}

    valid = []
    for suggestion in suggestions:
        if suggestion.target_clause_id not in clause_ids:
            logger.warning(f"Discarding suggestion with unknown clause ID: {suggestion.target_clause_id}")
            continue
        if suggestion.target_variable_id and suggestion.target_variable_id not in variable_ids:
            logger.warning(f"Discarding suggestion with unknown variable ID: {suggestion.target_variable_id}")
            continue
        valid.append(suggestion)

    return valid, len(suggestions) - len(valid)


def _resolve_file_kind(file_name: str, data: bytes, file_kind: Optional[str]) -> ReconciliationFileType:
    kind = (file_kind or detect_file_kind(file_name, data) or "").lower()
    try:
        return ReconciliationFileType(kind)
    except ValueError:
        raise ValidationError(
            f"Unsupported file type: {kind or 'unknown'}",
            {"allowed": [k.value for k in ReconciliationFileType]},
        )


def _load_clauses(db: Session, workspace_id: str) -> List[Clause]:
    return (
        db.query(Clause)
        .options(selectinload(Clause.variables))
        .filter(Clause.workspace_id == workspace_id)
        .order_by(Clause.order.asc(), Clause.created_at.asc())
        .all()
    )


async def upload_and_reconcile(
    db: Session,
    actor: Actor,
    workspace_id: str,
    data: bytes,
    file_name: str,
    file_kind: Optional[str] = None,
    extractor: Optional[TextExtractor] = None,
    proposer: Optional[ChangeProposer] = None,
) -> UploadResult:
    """
    Parse an incoming document into a reconciliation session of pending items.

    The workspace is read into detached snapshots and the read transaction
    is closed before the extractor and the AI proposer run, so no database
    connection is held during the model call. Only the final writes run
    inside one transaction.
    """
    validate_actor(actor)
    if not workspace_id:
        raise ValidationError("Workspace ID is required")
    require_workspace_access(db, workspace_id, actor)
    get_workspace_or_404(db, workspace_id)

    if not data:
        raise ValidationError("Uploaded file is empty")
    if not file_name:
        raise ValidationError("File name is required")
    max_bytes = get_settings().max_upload_bytes
    if len(data) > max_bytes:
        raise ValidationError(
            "Uploaded file is too large",
            {"size": len(data), "max_bytes": max_bytes},
        )
    kind = _resolve_file_kind(file_name, data, file_kind)

    clauses = [ClauseContext.from_clause(c) for c in _load_clauses(db, workspace_id)]
    db.rollback()

    extractor = extractor or extract_text
    try:
        text = extractor(data, kind.value, file_name)
    except ParserError as e:
        raise FileParseError(e.message, {"code": e.code, "file_name": file_name}) from e
    except EngineError:
        raise
    except Exception as e:
        logger.error(f"Text extraction failed for {file_name}: {e}", exc_info=True)
        raise FileParseError(f"Failed to extract text: {e}", {"file_name": file_name}) from e
    if not text or not text.strip():
        raise FileParseError("No text could be extracted from the file", {"file_name": file_name})

    if not clauses:
        raise NoClausesError("Workspace has no clauses to reconcile against", {"workspace_id": workspace_id})

    proposer = proposer or get_change_proposer()
    try:
        proposal = await proposer.propose_changes(clauses, text, file_name, kind.value)
    except EngineError:
        raise
    except Exception as e:
        logger.error(f"AI parsing failed for {file_name}: {e}", exc_info=True)
        raise AIParseError(f"AI parsing failed: {e}", {"file_name": file_name}) from e

    suggestions, discarded = validate_suggestion_references(proposal.suggestions, clauses)

    with atomic(db):
        session = ReconciliationSession(
            workspace_id=workspace_id,
            file_name=file_name,
            file_type=kind,
            uploaded_at=datetime.utcnow(),
            uploaded_by=actor.user_id,
            total_items=len(suggestions),
            applied_count=0,
            rejected_count=0,
            pending_count=len(suggestions),
        )
        db.add(session)
        db.flush()

        items = [
            ReconciliationItem(
                workspace_id=workspace_id,
                session_id=session.id,
                incoming_snippet=s.incoming_snippet,
                change_description=s.change_description,
                target_clause_id=s.target_clause_id,
                target_variable_id=s.target_variable_id,
                confidence=s.confidence,
                baseline_value=s.baseline_value,
                current_value=s.current_value,
                proposed_value=s.proposed_value,
                decision=ReconciliationDecision.PENDING,
            )
            for s in suggestions
        ]
        db.add_all(items)

        record_event(
            db, actor, AuditEventType.RECON_UPLOAD,
            workspace_id=workspace_id,
            target_type="reconciliation_session",
            target_id=session.id,
            after={
                "file_name": file_name,
                "file_type": kind.value,
                "total_items": len(suggestions),
                "discarded": discarded,
            },
        )

    db.refresh(session)
    for item in items:
        db.refresh(item)

    logger.info(
        f"Reconciliation session {session.id} created for workspace {workspace_id}: "
        f"{len(items)} items, {discarded} discarded"
    )
    return UploadResult(session=session, items=items, discarded_count=discarded, summary=proposal.summary)


# =============================================================================
# DECISIONS
# =============================================================================

def _load_pending_item(db: Session, actor: Actor, item_id: str) -> ReconciliationItem:
    validate_actor(actor)
    item = db.query(ReconciliationItem).filter(ReconciliationItem.id == item_id).first()
    if not item:
        raise NotFoundError("Reconciliation item not found", {"item_id": item_id})
    require_workspace_access(db, item.workspace_id, actor)
    if item.decision != ReconciliationDecision.PENDING:
        raise AlreadyDecidedError(
            f"Item has already been {item.decision.value}",
            {"item_id": item_id, "decision": item.decision.value},
        )
    return item


def _record_decision(
    db: Session,
    actor: Actor,
    item: ReconciliationItem,
    decision: ReconciliationDecision,
    reason: Optional[str],
    now: datetime,
) -> None:
    """Move the item out of pending and the session counters with it."""
    rowcount = (
        db.query(ReconciliationItem)
        .filter(
            ReconciliationItem.id == item.id,
            ReconciliationItem.decision == ReconciliationDecision.PENDING,
        )
        .update({
            ReconciliationItem.decision: decision,
            ReconciliationItem.decided_by: actor.user_id,
            ReconciliationItem.decided_at: now,
            ReconciliationItem.decision_reason: reason,
        }, synchronize_session=False)
    )
    if rowcount == 0:
        # A concurrent decision committed first
        raise AlreadyDecidedError(
            "Item has already been decided",
            {"item_id": item.id},
        )

    counter = (
        ReconciliationSession.applied_count
        if decision == ReconciliationDecision.APPLIED
        else ReconciliationSession.rejected_count
    )
    db.query(ReconciliationSession).filter(ReconciliationSession.id == item.session_id).update({
        ReconciliationSession.pending_count: ReconciliationSession.pending_count - 1,
        counter: counter + 1,
    }, synchronize_session=False)


def apply_item(
    db: Session,
    actor: Actor,
    item_id: str,
    reason: Optional[str] = None,
    reason_category: Union[ReasonCategory, str, None] = None,
) -> ApplyResult:
    """
    Accept a suggestion into the live draft.

    drift_created is True only when a new drift item was created; an
    existing unresolved drift is updated in place instead.
    """
    item = _load_pending_item(db, actor, item_id)
    workspace = get_workspace_or_404(db, item.workspace_id)

    variable = None
    if item.target_variable_id:
        variable = db.query(Variable).filter(Variable.id == item.target_variable_id).first()
        if variable is None:
            raise NotFoundError("Target variable not found", {"variable_id": item.target_variable_id})
    clause_id = variable.clause_id if variable is not None else item.target_clause_id
    clause = db.query(Clause).filter(Clause.id == clause_id).first()
    if clause is None:
        raise NotFoundError("Target clause not found", {"clause_id": clause_id})

    reason = reason.strip() if reason else None
    proposed = item.proposed_value
    drift_created = False

    with atomic(db):
        now = datetime.utcnow()
        _record_decision(db, actor, item, ReconciliationDecision.APPLIED, reason, now)

        if variable is not None:
            effective_baseline = variable.baseline_value or variable.value or item.baseline_value
            variable.value = proposed
            variable.last_modified_at = now
            variable.last_modified_by = actor.user_id
        else:
            effective_baseline = item.baseline_value

        if proposed != effective_baseline:
            existing = find_unresolved_drift(
                db, workspace.id, clause.id,
                variable.id if variable is not None else None,
            )
            _, drift_created = upsert_unresolved_drift(
                db, workspace, clause, variable,
                baseline_value=effective_baseline,
                current_value=proposed,
                modified_by=actor.user_id,
                modified_at=now,
                existing=existing,
            )
            mark_nodes_drifted(
                db, workspace.id, clause.id,
                variable_id=variable.id if variable is not None else None,
                value=proposed if variable is not None else None,
                unit=variable.unit if variable is not None else None,
            )

        record_event(
            db, actor, AuditEventType.RECON_APPLY,
            workspace_id=item.workspace_id,
            target_type="reconciliation_item",
            target_id=item.id,
            before={"value": item.current_value, "decision": ReconciliationDecision.PENDING.value},
            after={
                "value": proposed,
                "decision": ReconciliationDecision.APPLIED.value,
                "drift_created": drift_created,
            },
            reason=reason,
            reason_category=reason_category,
        )

    db.refresh(item)
    logger.info(f"Reconciliation item {item_id} applied by {actor.user_id} (drift_created={drift_created})")
    return ApplyResult(item=item, drift_created=drift_created)


def reject_item(
    db: Session,
    actor: Actor,
    item_id: str,
    reason: Optional[str] = None,
    reason_category: Union[ReasonCategory, str, None] = None,
) -> ReconciliationItem:
    """Decline a suggestion; the live draft is left untouched."""
    item = _load_pending_item(db, actor, item_id)
    reason = reason.strip() if reason else None

    with atomic(db):
        _record_decision(db, actor, item, ReconciliationDecision.REJECTED, reason, datetime.utcnow())
        record_event(
            db, actor, AuditEventType.RECON_REJECT,
            workspace_id=item.workspace_id,
            target_type="reconciliation_item",
            target_id=item.id,
            before={"value": item.current_value, "decision": ReconciliationDecision.PENDING.value},
            after={"value": item.current_value, "decision": ReconciliationDecision.REJECTED.value},
            reason=reason,
            reason_category=reason_category,
        )

    db.refresh(item)
    logger.info(f"Reconciliation item {item_id} rejected by {actor.user_id}")
    return item


# =============================================================================
# QUERIES
# =============================================================================

def list_sessions(db: Session, actor: Actor, workspace_id: str) -> QueryResult:
    """Reconciliation sessions for a workspace, newest upload first."""
    require_workspace_access(db, workspace_id, actor)
    try:
        sessions = (
            db.query(ReconciliationSession)
            .filter(ReconciliationSession.workspace_id == workspace_id)
            .order_by(ReconciliationSession.uploaded_at.desc())
            .all()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Session query failed for workspace {workspace_id}: {e}")
        return QueryResult(items=[], error=str(e))
    return QueryResult(items=sessions)


def get_session(db: Session, actor: Actor, session_id: str) -> ReconciliationSession:
    session = db.query(ReconciliationSession).filter(ReconciliationSession.id == session_id).first()
    if not session:
        raise NotFoundError("Reconciliation session not found", {"session_id": session_id})
    require_workspace_access(db, session.workspace_id, actor)
    return session


def list_items(
    db: Session,
    actor: Actor,
    session_id: str,
    decision: Optional[ReconciliationDecision] = None,
    confidence: Optional[ConfidenceLevel] = None,
) -> QueryResult:
    """Items of a session, HIGH confidence first, then in creation order."""
    get_session(db, actor, session_id)
    try:
        query = db.query(ReconciliationItem).filter(ReconciliationItem.session_id == session_id)
        if decision:
            query = query.filter(ReconciliationItem.decision == decision)
        if confidence:
            query = query.filter(ReconciliationItem.confidence == confidence)
        items = query.order_by(ReconciliationItem.created_at.asc(), ReconciliationItem.id.asc()).all()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Item query failed for session {session_id}: {e}")
        return QueryResult(items=[], error=str(e))

    items.sort(key=lambda i: CONFIDENCE_RANK[i.confidence])
    return QueryResult(items=items)


def get_item(db: Session, actor: Actor, item_id: str) -> ReconciliationItem:
    item = db.query(ReconciliationItem).filter(ReconciliationItem.id == item_id).first()
    if not item:
        raise NotFoundError("Reconciliation item not found", {"item_id": item_id})
    require_workspace_access(db, item.workspace_id, actor)
    return item
