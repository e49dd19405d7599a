"""
API Contract Tests

Exercises the HTTP surface end to end against a seeded SQLite workspace.
The AI and text-extraction collaborators are swapped via dependency overrides.
"""

import csv
import io

import pytest
from fastapi.testclient import TestClient

from consistency_engine.api import app, get_proposer, get_text_extractor
from consistency_engine.llm import ChangeProposer
from consistency_engine.schemas import ReconciliationProposal


class StaticProposer(ChangeProposer):
    def __init__(self, suggestions):
        self.suggestions = suggestions

    async def propose_changes(self, clauses, incoming_text, file_name, file_kind):
        return ReconciliationProposal.model_validate({"suggestions": self.suggestions, "summary": "1 change"})


@pytest.fixture
def client(seeded):
    client = TestClient(app)
    client.headers.update({"X-User-Id": seeded.actor.user_id})
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def outsider_client(seeded):
    client = TestClient(app)
    client.headers.update({"X-User-Id": seeded.outsider.user_id})
    return client


def _assert_error(response, status, code):
    assert response.status_code == status
    body = response.json()
    assert body["error"]["code"] == code
    assert body["error"]["message"]


class TestHealthAndAuth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_user_header(self, seeded):
        response = TestClient(app).get(f"/api/v1/workspaces/{seeded.workspace_id}/graph")
        _assert_error(response, 401, "UNAUTHORIZED")

    def test_unknown_user(self, seeded):
        client = TestClient(app)
        client.headers.update({"X-User-Id": "nobody"})
        response = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/graph")
        _assert_error(response, 401, "UNAUTHORIZED")

    def test_non_member_is_forbidden(self, outsider_client, seeded):
        response = outsider_client.post(f"/api/v1/workspaces/{seeded.workspace_id}/graph/recompute")
        _assert_error(response, 403, "FORBIDDEN")
        assert response.json()["error"]["details"]["workspace_id"] == seeded.workspace_id


class TestGraphEndpoints:
    def test_recompute_and_fetch(self, client, seeded):
        response = client.post(f"/api/v1/workspaces/{seeded.workspace_id}/graph/recompute")
        assert response.status_code == 200
        assert response.json() == {"node_count": 7, "edge_count": 8, "integrity_score": 100}

        graph = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/graph").json()
        assert len(graph["nodes"]) == 7
        assert len(graph["edges"]) == 8
        assert graph["integrity_score"] == 100
        assert graph["last_computed_at"] is not None

    def test_locate_and_connected(self, client, seeded):
        client.post(f"/api/v1/workspaces/{seeded.workspace_id}/graph/recompute")
        node_id = f"node-v-{seeded.ratio_id}"

        located = client.get(f"/api/v1/graph/nodes/{node_id}/locate").json()
        assert located == {"node_id": node_id, "clause_id": seeded.leverage_id, "variable_id": seeded.ratio_id}

        connected = client.get(f"/api/v1/graph/nodes/{node_id}/connected").json()
        assert [n["id"] for n in connected["items"]] == [f"node-c-{seeded.leverage_id}"]

    def test_unknown_node(self, client):
        _assert_error(client.get("/api/v1/graph/nodes/node-c-missing"), 404, "NOT_FOUND")


class TestDriftEndpoints:
    def test_drift_lifecycle(self, client, seeded, set_variable):
        set_variable(seeded.amount_id, "$1,150,000")
        base = f"/api/v1/workspaces/{seeded.workspace_id}"

        response = client.post(f"{base}/drift/recompute")
        assert response.json() == {"unresolved_count": 1}
        assert client.get(f"{base}/drift/high-count").json() == {"count": 1}
        assert client.get(f"{base}/drift/publish-blocked").json() == {"blocked": True, "unresolved_high_count": 1}

        items = client.get(f"{base}/drift", params={"type": "financial", "severity": "HIGH"}).json()["items"]
        assert len(items) == 1
        drift_id = items[0]["id"]
        assert items[0]["status"] == "unresolved"
        assert client.get(f"{base}/drift", params={"type": "covenant"}).json()["items"] == []

        _assert_error(client.post(f"/api/v1/drift/{drift_id}/approve", json={}), 400, "VALIDATION_ERROR")

        response = client.post(
            f"/api/v1/drift/{drift_id}/override",
            json={"reason": "Upsize agreed", "reason_category": "borrower_request"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "overridden"
        assert response.json()["baseline_value"] == "$1,150,000"

        _assert_error(
            client.post(f"/api/v1/drift/{drift_id}/revert", json={"reason": "too late"}),
            400, "VALIDATION_ERROR",
        )
        assert client.get(f"{base}/drift/publish-blocked").json()["blocked"] is False

    def test_unknown_drift(self, client):
        _assert_error(client.get("/api/v1/drift/missing"), 404, "NOT_FOUND")

    def test_invalid_reason_category(self, client, seeded, set_variable):
        set_variable(seeded.amount_id, "$1,150,000")
        client.post(f"/api/v1/workspaces/{seeded.workspace_id}/drift/recompute")
        drift_id = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/drift").json()["items"][0]["id"]

        response = client.post(
            f"/api/v1/drift/{drift_id}/approve",
            json={"reason": "ok", "reason_category": "whim"},
        )
        _assert_error(response, 400, "VALIDATION_ERROR")


class TestReconciliationEndpoints:
    def _upload(self, client, seeded, suggestions, text="Facility Amount: $1,200,000"):
        app.dependency_overrides[get_text_extractor] = lambda: (lambda data, kind, filename=None: text)
        app.dependency_overrides[get_proposer] = lambda: StaticProposer(suggestions)
        return client.post(
            f"/api/v1/workspaces/{seeded.workspace_id}/reconciliation/upload",
            files={"file": ("markup.pdf", b"%PDF-1.4 markup", "application/pdf")},
        )

    def test_upload_apply_reject(self, client, seeded):
        response = self._upload(client, seeded, [
            {
                "targetClauseId": seeded.facility_id,
                "targetVariableId": seeded.amount_id,
                "confidence": "HIGH",
                "baselineValue": "$1,000,000",
                "currentValue": "$1,000,000",
                "proposedValue": "$1,200,000",
            },
            {
                "targetClauseId": "made-up",
                "confidence": "HIGH",
                "proposedValue": "x",
            },
        ])
        assert response.status_code == 200
        body = response.json()
        assert body["summary"] == "1 change"
        assert body["session"]["file_type"] == "pdf"
        assert body["session"]["total_items"] == 1
        assert body["session"]["pending_count"] == 1
        item_id = body["items"][0]["id"]
        session_id = body["session"]["id"]

        listed = client.get(f"/api/v1/reconciliation/sessions/{session_id}/items").json()
        assert [i["id"] for i in listed["items"]] == [item_id]

        applied = client.post(f"/api/v1/reconciliation/items/{item_id}/apply", json={"reason": "Signed"})
        assert applied.status_code == 200
        assert applied.json()["drift_created"] is True
        assert applied.json()["item"]["decision"] == "applied"

        _assert_error(client.post(f"/api/v1/reconciliation/items/{item_id}/reject"), 409, "ALREADY_DECIDED")

        sessions = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/reconciliation/sessions").json()
        session = sessions["items"][0]
        assert (session["applied_count"], session["rejected_count"], session["pending_count"]) == (1, 0, 0)

        drift = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/drift").json()["items"]
        assert [(d["severity"], d["current_value"]) for d in drift] == [("HIGH", "$1,200,000")]

    def test_upload_parse_failure(self, client, seeded):
        response = self._upload(client, seeded, [], text="")
        _assert_error(response, 422, "FILE_PARSE_ERROR")

    def test_upload_requires_membership(self, outsider_client, seeded):
        app.dependency_overrides[get_proposer] = lambda: StaticProposer([])
        try:
            response = outsider_client.post(
                f"/api/v1/workspaces/{seeded.workspace_id}/reconciliation/upload",
                files={"file": ("markup.pdf", b"%PDF-1.4", "application/pdf")},
            )
        finally:
            app.dependency_overrides.clear()
        _assert_error(response, 403, "FORBIDDEN")


class TestAuditEndpoints:
    def test_list_and_export(self, client, seeded):
        client.post(f"/api/v1/workspaces/{seeded.workspace_id}/graph/recompute")

        events = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/audit").json()["items"]
        assert [e["event_type"] for e in events] == ["GRAPH_SYNC"]
        assert events[0]["after_state"]["node_count"] == 7

        response = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/audit/export", params={"format": "csv"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert [r["event_type"] for r in rows] == ["GRAPH_SYNC"]

        filtered = client.get(
            f"/api/v1/workspaces/{seeded.workspace_id}/audit",
            params={"event_type": "EXPORT_AUDIT"},
        ).json()["items"]
        assert len(filtered) == 1

    def test_export_unknown_format(self, client, seeded):
        response = client.get(f"/api/v1/workspaces/{seeded.workspace_id}/audit/export", params={"format": "pdf"})
        _assert_error(response, 400, "VALIDATION_ERROR")
