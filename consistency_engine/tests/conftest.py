"""
Shared fixtures: a fresh SQLite database per test and a seeded loan workspace.
"""

import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from consistency_engine.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "consistency.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def db(sqlalchemy_db):
    from consistency_engine.db.session import SessionLocal, get_engine

    get_engine()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _seed_workspace(db):
    from consistency_engine.db.models import (
        User, Workspace, WorkspaceMember, Clause, Variable,
        MemberRole, MemberStatus, ClauseType, VariableType,
    )
    from consistency_engine.membership import Actor

    agent = User(email="agent@bank.local", name="Agent User")
    outsider = User(email="outsider@fund.local", name="Outsider User")
    removed = User(email="removed@bank.local", name="Removed User")
    db.add_all([agent, outsider, removed])
    db.flush()

    workspace = Workspace(
        name="Acme Term Loan",
        created_by_id=agent.id,
        governance_rules={"publish_blocked_when_high_drift": True},
        created_at=datetime(2026, 1, 5, 9, 0, 0),
    )
    db.add(workspace)
    db.flush()

    db.add_all([
        WorkspaceMember(workspace_id=workspace.id, user_id=agent.id, role=MemberRole.AGENT, is_admin=True),
        WorkspaceMember(
            workspace_id=workspace.id, user_id=removed.id,
            role=MemberRole.LEGAL, status=MemberStatus.REMOVED,
        ),
    ])

    facility = Clause(
        workspace_id=workspace.id, title="1. Facility Amount",
        body="The Lenders make available a term loan facility.", type=ClauseType.FINANCIAL, order=1,
    )
    leverage = Clause(
        workspace_id=workspace.id, title="2. Leverage Ratio",
        body="Leverage shall not exceed the ratio below.", type=ClauseType.COVENANT, order=2,
        is_sensitive=True,
    )
    ebitda = Clause(
        workspace_id=workspace.id, title="3. EBITDA",
        body="EBITDA means consolidated earnings before interest.", type=ClauseType.DEFINITION, order=3,
    )
    notices = Clause(
        workspace_id=workspace.id, title="4. Notices",
        body="Notices shall be in writing.", type=ClauseType.GENERAL, order=4,
    )
    db.add_all([facility, leverage, ebitda, notices])
    db.flush()

    base_time = datetime(2026, 1, 5, 10, 0, 0)
    amount = Variable(
        workspace_id=workspace.id, clause_id=facility.id, label="Facility Amount",
        type=VariableType.FINANCIAL, value="$1,000,000", baseline_value="$1,000,000",
        created_at=base_time,
    )
    fee = Variable(
        workspace_id=workspace.id, clause_id=facility.id, label="Commitment Fee",
        type=VariableType.FINANCIAL, value="0.50", unit="%", baseline_value="0.50",
        created_at=base_time + timedelta(seconds=1),
    )
    ratio = Variable(
        workspace_id=workspace.id, clause_id=leverage.id, label="Max Leverage",
        type=VariableType.RATIO, value="4.50", unit="x", baseline_value="4.50",
        created_at=base_time + timedelta(seconds=2),
    )
    definition = Variable(
        workspace_id=workspace.id, clause_id=ebitda.id, label="EBITDA Threshold",
        type=VariableType.DEFINITION, value="at least", baseline_value="at least",
        created_at=base_time + timedelta(seconds=3),
    )
    db.add_all([amount, fee, ratio, definition])
    db.commit()

    return SimpleNamespace(
        workspace_id=workspace.id,
        actor=Actor(user_id=agent.id, name=agent.name),
        outsider=Actor(user_id=outsider.id, name=outsider.name),
        removed=Actor(user_id=removed.id, name=removed.name),
        facility_id=facility.id,
        leverage_id=leverage.id,
        ebitda_id=ebitda.id,
        notices_id=notices.id,
        amount_id=amount.id,
        fee_id=fee.id,
        ratio_id=ratio.id,
        definition_id=definition.id,
    )


@pytest.fixture
def seeded(db):
    return _seed_workspace(db)


@pytest.fixture
def set_variable(db):
    """Simulate a user editing a variable's live value."""
    from consistency_engine.db.models import Variable

    def _set(variable_id, value, modified_by=None):
        variable = db.query(Variable).filter(Variable.id == variable_id).first()
        variable.value = value
        variable.last_modified_at = datetime.utcnow()
        variable.last_modified_by = modified_by
        db.commit()
        return variable

    return _set


@pytest.fixture
def make_session(db):
    """Create a reconciliation session with pending items directly in the store."""
    from consistency_engine.db.models import (
        ReconciliationSession, ReconciliationItem, ReconciliationFileType,
        ConfidenceLevel, ReconciliationDecision,
    )

    def _make(workspace_id, uploaded_by, specs):
        session = ReconciliationSession(
            workspace_id=workspace_id,
            file_name="markup.docx",
            file_type=ReconciliationFileType.DOCX,
            uploaded_by=uploaded_by,
            total_items=len(specs),
            pending_count=len(specs),
            applied_count=0,
            rejected_count=0,
        )
        db.add(session)
        db.flush()
        items = []
        for spec in specs:
            item = ReconciliationItem(
                workspace_id=workspace_id,
                session_id=session.id,
                incoming_snippet=spec.get("snippet", ""),
                target_clause_id=spec["clause_id"],
                target_variable_id=spec.get("variable_id"),
                confidence=spec.get("confidence", ConfidenceLevel.HIGH),
                baseline_value=spec.get("baseline", ""),
                current_value=spec.get("current", ""),
                proposed_value=spec["proposed"],
                decision=ReconciliationDecision.PENDING,
            )
            db.add(item)
            items.append(item)
        db.commit()
        return session.id, [i.id for i in items]

    return _make
