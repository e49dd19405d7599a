"""
Consistency Engine API
======================

FastAPI transport for the loan-workspace consistency engine.

Graph:
- GET  /api/v1/workspaces/{workspace_id}/graph              - Stored graph + integrity score
- POST /api/v1/workspaces/{workspace_id}/graph/recompute    - Rebuild graph
- GET  /api/v1/graph/nodes/{node_id}                        - Node
- GET  /api/v1/graph/nodes/{node_id}/locate                 - Owning clause/variable
- GET  /api/v1/graph/nodes/{node_id}/connected              - Neighbouring nodes

Drift:
- GET  /api/v1/workspaces/{workspace_id}/drift              - List (filters)
- POST /api/v1/workspaces/{workspace_id}/drift/recompute    - Recompute drift
- GET  /api/v1/workspaces/{workspace_id}/drift/high-count   - Unresolved HIGH count
- GET  /api/v1/workspaces/{workspace_id}/drift/publish-blocked
- GET  /api/v1/drift/{drift_id}
- POST /api/v1/drift/{drift_id}/override|revert|approve

Reconciliation:
- POST /api/v1/workspaces/{workspace_id}/reconciliation/upload
- GET  /api/v1/workspaces/{workspace_id}/reconciliation/sessions
- GET  /api/v1/reconciliation/sessions/{session_id}/items
- GET  /api/v1/reconciliation/items/{item_id}
- POST /api/v1/reconciliation/items/{item_id}/apply|reject

Audit:
- GET  /api/v1/workspaces/{workspace_id}/audit
- GET  /api/v1/workspaces/{workspace_id}/audit/export?format=json|csv

Callers identify themselves with the X-User-Id header.

Run with:
    uvicorn consistency_engine.api:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import audit as audit_engine
from . import drift as drift_engine
from . import graph as graph_engine
from . import reconciliation as recon_engine
from .config import get_settings
from .db.models import (
    AuditEventType, ClauseType, ConfidenceLevel, DriftSeverity, DriftStatus,
    ReconciliationDecision, User,
)
from .db.session import get_db, init_db
from .errors import EngineError
from .ingest import extract_text
from .llm import ChangeProposer, OpenRouterChangeProposer, get_change_proposer
from .membership import Actor
from .schemas import (
    ApplyItemResponse,
    AuditEventResponse,
    AuditListResponse,
    DecisionRequest,
    DriftItemResponse,
    DriftListResponse,
    DriftRecomputeResponse,
    DriftResolutionRequest,
    ErrorResponse,
    GraphEdgeResponse,
    GraphNodeResponse,
    GraphResponse,
    GraphSyncResponse,
    HighDriftCountResponse,
    ItemListResponse,
    NodeLocationResponse,
    PublishBlockedResponse,
    ReconciliationItemResponse,
    ReconciliationSessionResponse,
    RejectItemResponse,
    SessionListResponse,
    UploadResponse,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Consistency Engine",
    description="Graph, drift and reconciliation engine for loan-document workspaces",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

router = APIRouter(prefix="/api/v1")

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


# =============================================================================
# Dependencies
# =============================================================================

def get_current_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> Actor:
    """Resolve the calling user from the X-User-Id header"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    user = db.query(User).filter(User.id == x_user_id).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return Actor.from_user(user)


def get_text_extractor():
    """Text-extraction collaborator (overridable in tests)"""
    return extract_text


def get_proposer() -> ChangeProposer:
    """AI document-parsing collaborator (overridable in tests)"""
    return get_change_proposer()


# =============================================================================
# Error handling
# =============================================================================

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    code = "UNAUTHORIZED" if exc.status_code == 401 else "HTTP_ERROR"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": code, "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": {
            "code": "VALIDATION_ERROR",
            "message": "Invalid request",
            "details": {"errors": jsonable_encoder(exc.errors())},
        }},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler - always return valid JSON"""
    logger.error("Unhandled exception on %s: %s", request.url.path, exc.__class__.__name__)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
    )


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    logger.info(f"Starting Consistency Engine v{settings.service_version}")
    init_db()
    for warning in settings.validate_llm_config():
        logger.warning(warning)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    proposer = get_change_proposer()
    if isinstance(proposer, OpenRouterChangeProposer):
        await proposer.close()
    logger.info("Consistency Engine stopped")


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": settings.service_version,
        "timestamp": datetime.utcnow().isoformat(),
    }


# =============================================================================
# Graph
# =============================================================================

@router.get("/workspaces/{workspace_id}/graph", response_model=GraphResponse, tags=["Graph"], responses=ERROR_RESPONSES)
def get_graph(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    view = graph_engine.get_graph(db, actor, workspace_id)
    return GraphResponse(
        nodes=[GraphNodeResponse.model_validate(n) for n in view.nodes],
        edges=[GraphEdgeResponse.model_validate(e) for e in view.edges],
        integrity_score=view.integrity_score,
        last_computed_at=view.last_computed_at,
    )


@router.post("/workspaces/{workspace_id}/graph/recompute", response_model=GraphSyncResponse, tags=["Graph"], responses=ERROR_RESPONSES)
def recompute_graph(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    result = graph_engine.rebuild_graph(db, actor, workspace_id)
    return GraphSyncResponse(
        node_count=result.node_count,
        edge_count=result.edge_count,
        integrity_score=result.integrity_score,
    )


@router.get("/graph/nodes/{node_id}", response_model=GraphNodeResponse, tags=["Graph"], responses=ERROR_RESPONSES)
def get_node(node_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return GraphNodeResponse.model_validate(graph_engine.get_node(db, actor, node_id))


@router.get("/graph/nodes/{node_id}/locate", response_model=NodeLocationResponse, tags=["Graph"], responses=ERROR_RESPONSES)
def locate_node(node_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return NodeLocationResponse(**graph_engine.locate_node(db, actor, node_id))


@router.get("/graph/nodes/{node_id}/connected", tags=["Graph"], responses=ERROR_RESPONSES)
def get_connected_nodes(node_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    nodes = graph_engine.get_connected_nodes(db, actor, node_id)
    return {"items": [GraphNodeResponse.model_validate(n) for n in nodes]}


# =============================================================================
# Drift
# =============================================================================

@router.get("/workspaces/{workspace_id}/drift", response_model=DriftListResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def list_drift(
    workspace_id: str,
    severity: Optional[DriftSeverity] = Query(None),
    type: Optional[ClauseType] = Query(None),
    status: Optional[DriftStatus] = Query(None),
    keyword: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    result = drift_engine.list_drift(
        db, actor, workspace_id,
        severity=severity, clause_type=type, status=status, keyword=keyword,
    )
    return DriftListResponse(
        items=[DriftItemResponse.model_validate(d) for d in result.items],
        error=result.error,
    )


@router.post("/workspaces/{workspace_id}/drift/recompute", response_model=DriftRecomputeResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def recompute_drift(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return DriftRecomputeResponse(unresolved_count=drift_engine.recompute_drift(db, actor, workspace_id))


@router.get("/workspaces/{workspace_id}/drift/high-count", response_model=HighDriftCountResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def high_drift_count(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return HighDriftCountResponse(count=drift_engine.get_unresolved_high_drift_count(db, actor, workspace_id))


@router.get("/workspaces/{workspace_id}/drift/publish-blocked", response_model=PublishBlockedResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def publish_blocked(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return PublishBlockedResponse(
        blocked=drift_engine.is_publish_blocked(db, actor, workspace_id),
        unresolved_high_count=drift_engine.get_unresolved_high_drift_count(db, actor, workspace_id),
    )


@router.get("/drift/{drift_id}", response_model=DriftItemResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def get_drift(drift_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return DriftItemResponse.model_validate(drift_engine.get_drift(db, actor, drift_id))


@router.post("/drift/{drift_id}/override", response_model=DriftItemResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def override_drift(
    drift_id: str,
    request: DriftResolutionRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    drift = drift_engine.override_baseline(db, actor, drift_id, request.reason, request.reason_category)
    return DriftItemResponse.model_validate(drift)


@router.post("/drift/{drift_id}/revert", response_model=DriftItemResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def revert_drift(
    drift_id: str,
    request: DriftResolutionRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    drift = drift_engine.revert_draft(db, actor, drift_id, request.reason, request.reason_category)
    return DriftItemResponse.model_validate(drift)


@router.post("/drift/{drift_id}/approve", response_model=DriftItemResponse, tags=["Drift"], responses=ERROR_RESPONSES)
def approve_drift(
    drift_id: str,
    request: DriftResolutionRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    drift = drift_engine.approve_drift(db, actor, drift_id, request.reason, request.reason_category)
    return DriftItemResponse.model_validate(drift)


# =============================================================================
# Reconciliation
# =============================================================================

@router.post("/workspaces/{workspace_id}/reconciliation/upload", response_model=UploadResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
async def upload_reconciliation(
    workspace_id: str,
    file: UploadFile = File(...),
    file_kind: Optional[str] = Form(None),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    extractor=Depends(get_text_extractor),
    proposer: ChangeProposer = Depends(get_proposer),
):
    data = await file.read()
    result = await recon_engine.upload_and_reconcile(
        db, actor, workspace_id, data, file.filename or "",
        file_kind=file_kind, extractor=extractor, proposer=proposer,
    )
    return UploadResponse(
        session=ReconciliationSessionResponse.model_validate(result.session),
        items=[ReconciliationItemResponse.model_validate(i) for i in result.items],
        summary=result.summary,
    )


@router.get("/workspaces/{workspace_id}/reconciliation/sessions", response_model=SessionListResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
def list_sessions(workspace_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    result = recon_engine.list_sessions(db, actor, workspace_id)
    return SessionListResponse(
        items=[ReconciliationSessionResponse.model_validate(s) for s in result.items],
        error=result.error,
    )


@router.get("/reconciliation/sessions/{session_id}/items", response_model=ItemListResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
def list_items(
    session_id: str,
    decision: Optional[ReconciliationDecision] = Query(None),
    confidence: Optional[ConfidenceLevel] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    result = recon_engine.list_items(db, actor, session_id, decision=decision, confidence=confidence)
    return ItemListResponse(
        items=[ReconciliationItemResponse.model_validate(i) for i in result.items],
        error=result.error,
    )


@router.get("/reconciliation/items/{item_id}", response_model=ReconciliationItemResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
def get_item(item_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ReconciliationItemResponse.model_validate(recon_engine.get_item(db, actor, item_id))


@router.post("/reconciliation/items/{item_id}/apply", response_model=ApplyItemResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
def apply_item(
    item_id: str,
    request: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    request = request or DecisionRequest()
    result = recon_engine.apply_item(db, actor, item_id, request.reason, request.reason_category)
    return ApplyItemResponse(
        item=ReconciliationItemResponse.model_validate(result.item),
        drift_created=result.drift_created,
    )


@router.post("/reconciliation/items/{item_id}/reject", response_model=RejectItemResponse, tags=["Reconciliation"], responses=ERROR_RESPONSES)
def reject_item(
    item_id: str,
    request: Optional[DecisionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    request = request or DecisionRequest()
    item = recon_engine.reject_item(db, actor, item_id, request.reason, request.reason_category)
    return RejectItemResponse(item=ReconciliationItemResponse.model_validate(item))


# =============================================================================
# Audit
# =============================================================================

@router.get("/workspaces/{workspace_id}/audit", response_model=AuditListResponse, tags=["Audit"], responses=ERROR_RESPONSES)
def list_audit_events(
    workspace_id: str,
    event_type: Optional[AuditEventType] = Query(None),
    actor_id: Optional[str] = Query(None),
    target_type: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    keyword: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    result = audit_engine.list_events(
        db, actor, workspace_id,
        event_type=event_type, actor_id=actor_id, target_type=target_type,
        target_id=target_id, start=start, end=end, keyword=keyword,
    )
    return AuditListResponse(
        items=[AuditEventResponse(**audit_engine.event_to_dict(e)) for e in result.items],
        error=result.error,
    )


@router.get("/workspaces/{workspace_id}/audit/export", tags=["Audit"], responses=ERROR_RESPONSES)
def export_audit(
    workspace_id: str,
    format: str = Query("json", description="json or csv"),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    content, media_type = audit_engine.export_events(db, actor, workspace_id, format)
    extension = "csv" if media_type == "text/csv" else "json"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit-{workspace_id}.{extension}"'},
    )


app.include_router(router)


# =============================================================================
# Main (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "consistency_engine.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
