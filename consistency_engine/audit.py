"""
Audit Trail
===========

Every state-changing engine operation appends exactly one AuditEvent in
the same transaction as the change it describes. record_event only adds
the row; committing is the caller's transaction's job.
"""

import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db.models import AuditEvent, AuditEventType, ReasonCategory
from .db.session import atomic
from .errors import QueryResult, ValidationError
from .membership import Actor, require_workspace_access

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")

CSV_COLUMNS = [
    "id", "timestamp", "actor_id", "actor_name", "event_type",
    "target_type", "target_id", "before_state", "after_state",
    "reason", "reason_category",
]


def _dump_state(state: Optional[Dict[str, Any]]) -> Optional[str]:
    if state is None:
        return None
    return json.dumps(state, default=str, sort_keys=True)


def _load_state(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


def coerce_reason_category(value: Union[ReasonCategory, str, None]) -> Optional[ReasonCategory]:
    if value is None or value == "":
        return None
    if isinstance(value, ReasonCategory):
        return value
    try:
        return ReasonCategory(value)
    except ValueError:
        raise ValidationError(
            f"Unknown reason category: {value}",
            {"allowed": [c.value for c in ReasonCategory]},
        )


def record_event(
    db: Session,
    actor: Actor,
    event_type: AuditEventType,
    workspace_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    reason_category: Union[ReasonCategory, str, None] = None,
) -> AuditEvent:
    """Append one audit event to the current transaction."""
    event = AuditEvent(
        workspace_id=workspace_id,
        timestamp=datetime.utcnow(),
        actor_id=actor.user_id,
        actor_name=actor.name,
        event_type=event_type,
        target_type=target_type,
        target_id=target_id,
        before_state=_dump_state(before),
        after_state=_dump_state(after),
        reason=reason,
        reason_category=coerce_reason_category(reason_category),
    )
    db.add(event)
    return event


def event_to_dict(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "workspace_id": event.workspace_id,
        "timestamp": event.timestamp.isoformat() if event.timestamp else None,
        "actor_id": event.actor_id,
        "actor_name": event.actor_name,
        "event_type": event.event_type.value if event.event_type else None,
        "target_type": event.target_type,
        "target_id": event.target_id,
        "before_state": _load_state(event.before_state),
        "after_state": _load_state(event.after_state),
        "reason": event.reason,
        "reason_category": event.reason_category.value if event.reason_category else None,
    }


def _filtered_events_query(
    db: Session,
    workspace_id: str,
    event_type: Optional[AuditEventType] = None,
    actor_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    keyword: Optional[str] = None,
):
    query = db.query(AuditEvent).filter(AuditEvent.workspace_id == workspace_id)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)
    if actor_id:
        query = query.filter(AuditEvent.actor_id == actor_id)
    if target_type:
        query = query.filter(AuditEvent.target_type == target_type)
    if target_id:
        query = query.filter(AuditEvent.target_id == target_id)
    if start:
        query = query.filter(AuditEvent.timestamp >= start)
    if end:
        query = query.filter(AuditEvent.timestamp <= end)
    if keyword:
        pattern = f"%{keyword}%"
        query = query.filter(or_(
            AuditEvent.actor_name.ilike(pattern),
            AuditEvent.reason.ilike(pattern),
            AuditEvent.target_id.ilike(pattern),
            AuditEvent.before_state.ilike(pattern),
            AuditEvent.after_state.ilike(pattern),
        ))
    return query.order_by(AuditEvent.timestamp.desc())


def list_events(
    db: Session,
    actor: Actor,
    workspace_id: str,
    event_type: Optional[AuditEventType] = None,
    actor_id: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    keyword: Optional[str] = None,
) -> QueryResult:
    """Audit events for a workspace, newest first."""
    require_workspace_access(db, workspace_id, actor)
    try:
        events = _filtered_events_query(
            db, workspace_id, event_type, actor_id, target_type,
            target_id, start, end, keyword,
        ).all()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Audit query failed for workspace {workspace_id}: {e}")
        return QueryResult(items=[], error=str(e))
    return QueryResult(items=events)


def _render_csv(rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        flat = dict(row)
        flat["before_state"] = _dump_state(row.get("before_state")) or ""
        flat["after_state"] = _dump_state(row.get("after_state")) or ""
        writer.writerow(flat)
    return buffer.getvalue()


def export_events(
    db: Session,
    actor: Actor,
    workspace_id: str,
    export_format: str = "json",
    **filters: Any,
) -> Tuple[str, str]:
    """
    Export the workspace audit trail.

    Returns (content, media_type). The export itself is audited with one
    EXPORT_AUDIT event, written after the rows are read so it never
    appears in its own export.
    """
    require_workspace_access(db, workspace_id, actor)
    export_format = (export_format or "json").lower()
    if export_format not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format: {export_format}",
            {"allowed": list(EXPORT_FORMATS)},
        )

    with atomic(db):
        events = _filtered_events_query(db, workspace_id, **filters).all()
        rows = [event_to_dict(e) for e in events]
        record_event(
            db, actor, AuditEventType.EXPORT_AUDIT,
            workspace_id=workspace_id,
            target_type="workspace",
            target_id=workspace_id,
            after={"format": export_format, "event_count": len(rows)},
        )

    logger.info(f"Exported {len(rows)} audit events for workspace {workspace_id} as {export_format}")

    if export_format == "csv":
        return _render_csv(rows), "text/csv"
    return json.dumps(rows, ensure_ascii=False, indent=2), "application/json"
