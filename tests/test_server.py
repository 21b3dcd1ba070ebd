"""
Tests for the ApprovalFlow server: configuration and HTTP API.
"""

import os
import tempfile
from unittest.mock import patch

import pytest

from approvalflow.server.config import ServerConfig

HEADERS = {"X-API-Key": "dev-admin-key", "X-User-ID": "admin"}

REVIEWERS_YAML = """\
reviewers:
  - id: u1
    display_name: Ana
    role: admin
    department: Legal & Compliance
  - id: u2
    display_name: Ben
    role: decision_maker
    department: IT
  - id: u9
    display_name: Dev
    role: developer
    department: R&D
"""


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        config = ServerConfig()
        assert config.host == "0.0.0.0"
        assert config.port == 8000
        assert config.api_version == "v1"
        assert "dev-admin-key" in config.api_keys
        assert config.start_dispatcher is True

    def test_custom_values(self):
        config = ServerConfig(
            host="127.0.0.1",
            port=9000,
            database_url="postgresql://localhost/approvals",
            debug=True,
        )
        assert config.host == "127.0.0.1"
        assert config.database_url == "postgresql://localhost/approvals"
        assert config.debug is True

    def test_from_env(self):
        with patch.dict(
            os.environ,
            {
                "APPROVALFLOW_PORT": "9999",
                "APPROVALFLOW_DEBUG": "true",
                "APPROVALFLOW_API_KEYS": "k1, k2",
                "APPROVALFLOW_WEBHOOK_URL": "https://hooks.example.com/x",
            },
        ):
            config = ServerConfig.from_env()
            assert config.port == 9999
            assert config.debug is True
            assert config.api_keys == {"k1", "k2"}
            assert config.webhook_url == "https://hooks.example.com/x"


class TestApi:
    """End-to-end tests through the FastAPI app."""

    @pytest.fixture
    def client(self, tmp_path):
        from fastapi.testclient import TestClient

        from approvalflow import database as db_module
        from approvalflow.server.app import create_app

        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            db_path = f.name

        reviewers_file = tmp_path / "reviewers.yaml"
        reviewers_file.write_text(REVIEWERS_YAML)

        db_module._database = None
        config = ServerConfig(
            database_url=f"sqlite:///{db_path}",
            reviewers_file=str(reviewers_file),
            start_dispatcher=False,
        )
        app = create_app(config)
        with TestClient(app) as c:
            yield c

        db_module._database = None
        os.unlink(db_path)

    def _submit(self, client, module_id="sys-1", **kwargs):
        body = {"moduleType": "risk_assessment", "moduleId": module_id, "title": "Risk review"}
        body.update(kwargs)
        return client.post("/api/v1/items", json=body, headers=HEADERS)

    def _drain(self, client):
        client.app.state.services.dispatcher.drain()

    def test_discovery(self, client):
        resp = client.get("/.well-known/approvalflow.json")
        assert resp.status_code == 200
        data = resp.json()
        assert data["apiVersion"] == "v1"
        assert "round_robin" in data["strategies"]

    def test_requires_api_key(self, client):
        resp = client.get("/api/v1/items")
        assert resp.status_code == 401
        resp = client.get("/api/v1/items", headers={"X-API-Key": "wrong"})
        assert resp.status_code == 401

    def test_submit_and_get(self, client):
        resp = self._submit(client, priority="high")
        assert resp.status_code == 201
        item_id = resp.json()["item_id"]
        assert resp.json()["item"]["submitted_by"] == "admin"

        resp = client.get(f"/api/v1/items/{item_id}", headers=HEADERS)
        assert resp.json()["status"] == "pending"
        assert resp.json()["priority"] == "high"

        resp = client.get(
            "/api/v1/items/exists",
            params={"moduleType": "risk_assessment", "moduleId": "sys-1"},
            headers=HEADERS,
        )
        assert resp.json() == {"exists": True, "item_id": item_id}

    def test_duplicate_submission(self, client):
        first = self._submit(client).json()["item_id"]
        resp = self._submit(client)
        assert resp.status_code == 409
        data = resp.json()
        assert data["error"] == "duplicate_pending_item"
        assert data["existing_item_id"] == first
        assert data["existingItemId"] == first
        assert data["moduleType"] == "risk_assessment"

    def test_invalid_module_type(self, client):
        resp = self._submit(client, moduleType="invoice")
        assert resp.status_code == 400
        assert resp.json()["invalid_field"] == "module_type"

    def test_get_missing_item(self, client):
        resp = client.get("/api/v1/items/nope", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_manual_assignment_and_status(self, client):
        item_id = self._submit(client).json()["item_id"]

        resp = client.post(
            f"/api/v1/items/{item_id}/assign",
            json={"reviewerIds": ["u1"], "note": "please review"},
            headers=HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "assigned"
        version = resp.json()["version"]

        resp = client.patch(
            f"/api/v1/items/{item_id}/status",
            json={"newStatus": "completed", "feedback": "Approved"},
            headers={**HEADERS, "If-Match": str(version)},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        events = client.get(f"/api/v1/items/{item_id}/events", headers=HEADERS).json()
        assert [e["event_type"] for e in events] == ["submission", "assignment", "completion"]
        assignments = client.get(f"/api/v1/items/{item_id}/assignments", headers=HEADERS).json()
        assert assignments[0]["strategy_used"] == "manual"
        assert assignments[0]["assigned_by"] == "admin"

    def test_unknown_and_missing_reviewers(self, client):
        item_id = self._submit(client).json()["item_id"]

        resp = client.post(f"/api/v1/items/{item_id}/assign", json={"reviewerIds": []}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["error"] == "no_reviewers_selected"

        resp = client.post(
            f"/api/v1/items/{item_id}/assign", json={"reviewerIds": ["ghost"]}, headers=HEADERS
        )
        assert resp.status_code == 400
        assert resp.json()["unknown_ids"] == ["ghost"]

    def test_invalid_transition(self, client):
        item_id = self._submit(client).json()["item_id"]
        resp = client.patch(
            f"/api/v1/items/{item_id}/status", json={"newStatus": "completed"}, headers=HEADERS
        )
        assert resp.status_code == 409
        assert resp.json()["current_status"] == "pending"
        assert resp.json()["currentStatus"] == "pending"
        assert resp.json()["requestedStatus"] == "completed"

    def test_stale_if_match(self, client):
        item_id = self._submit(client).json()["item_id"]
        client.post(f"/api/v1/items/{item_id}/assign", json={"reviewerIds": ["u1"]}, headers=HEADERS)

        resp = client.patch(
            f"/api/v1/items/{item_id}/status",
            json={"newStatus": "in_progress"},
            headers={**HEADERS, "If-Match": "1"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "stale_state"
        assert resp.json()["current_version"] == 2

    def test_auto_assign(self, client):
        item_id = self._submit(client).json()["item_id"]
        resp = client.post(f"/api/v1/items/{item_id}/auto-assign", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["assignees"] == ["u1"]

    def test_auto_assign_disabled(self, client):
        resp = client.put(
            "/api/v1/settings/auto-assignment",
            json={"enabled": False, "strategyType": "workload_balanced"},
            headers=HEADERS,
        )
        assert resp.status_code == 200
        item_id = self._submit(client).json()["item_id"]

        resp = client.post(f"/api/v1/items/{item_id}/auto-assign", json={}, headers=HEADERS)
        assert resp.status_code == 412
        assert resp.json()["reason"] == "disabled"

        resp = client.post(
            f"/api/v1/items/{item_id}/auto-assign", json={"forceAssign": True}, headers=HEADERS
        )
        assert resp.status_code == 200

    def test_settings_roundtrip(self, client):
        resp = client.get("/api/v1/settings/auto-assignment", headers=HEADERS)
        assert resp.status_code == 200
        current = resp.json()
        assert current["strategy_type"] == "workload_balanced"
        assert "round_robin_cursor" not in current

        resp = client.put(
            "/api/v1/settings/auto-assignment",
            json={
                "enabled": True,
                "strategyType": "round_robin",
                "eligibleRoles": ["admin"],
                "eligibleDepartments": ["IT"],
            },
            headers={**HEADERS, "If-Match": str(current["version"])},
        )
        assert resp.status_code == 200
        assert resp.json()["version"] == current["version"] + 1
        assert resp.json()["updated_by"] == "admin"

    def test_settings_validation(self, client):
        resp = client.put(
            "/api/v1/settings/auto-assignment",
            json={"strategyType": "random", "eligibleRoles": ["a"], "eligibleDepartments": ["b"]},
            headers=HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_strategy"

        resp = client.put(
            "/api/v1/settings/auto-assignment",
            json={"enabled": True, "strategyType": "round_robin", "eligibleDepartments": ["IT"]},
            headers=HEADERS,
        )
        assert resp.status_code == 400
        assert resp.json()["invalid_field"] == "eligible_roles"

        current = client.get("/api/v1/settings/auto-assignment", headers=HEADERS).json()
        assert current["strategy_type"] == "workload_balanced"

    def test_reviewers(self, client):
        resp = client.get(
            "/api/v1/reviewers", params={"role": ["admin", "decision_maker"]}, headers=HEADERS
        )
        assert [r["id"] for r in resp.json()] == ["u1", "u2"]

        resp = client.post(
            "/api/v1/reviewers",
            json={"id": "u4", "displayName": "Flo", "role": "admin", "department": "IT"},
            headers=HEADERS,
        )
        assert resp.status_code == 201
        resp = client.get("/api/v1/reviewers", params={"department": "IT"}, headers=HEADERS)
        assert [r["id"] for r in resp.json()] == ["u2", "u4"]

    def test_notifications(self, client):
        item_id = self._submit(client, submittedBy="s1").json()["item_id"]
        client.post(f"/api/v1/items/{item_id}/assign", json={"reviewerIds": ["u2"]}, headers=HEADERS)
        self._drain(client)

        resp = client.get("/api/v1/users/u2/notifications", headers=HEADERS)
        [notification] = resp.json()
        assert notification["type"] == "assignment"
        assert notification["title"] == "New Approval Assignment"

        resp = client.get("/api/v1/users/u2/notifications/unread-count", headers=HEADERS)
        assert resp.json() == {"count": 1}

        resp = client.post("/api/v1/users/u2/notifications/read", json={}, headers=HEADERS)
        assert resp.json() == {"updated": 1}
        resp = client.get(
            "/api/v1/users/u2/notifications", params={"unreadOnly": "true"}, headers=HEADERS
        )
        assert resp.json() == []

    def test_send_reminders(self, client):
        resp = client.post("/api/v1/reminders/send", json={"withinHours": 24}, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json() == {"sent": 0}

    def test_analyze(self, client):
        resp = client.post(
            "/api/v1/validation/analyze",
            json={"text": "Article 99 might be relevant."},
            headers=HEADERS,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["is_valid"] is False
        assert data["review_required"] is True

        resp = client.post("/api/v1/validation/analyze", json={"text": " "}, headers=HEADERS)
        assert resp.status_code == 400

    def test_expert_review_flow(self, client):
        resp = client.post(
            "/api/v1/expert-reviews",
            json={"text": "It might be high risk.", "type": "risk_assessment"},
            headers=HEADERS,
        )
        assert resp.status_code == 201
        review = resp.json()
        assert review["status"] == "pending"
        assert review["review_type"] == "risk_assessment"
        assert review["validation_result"]["review_required"] is True

        resp = client.patch(
            f"/api/v1/expert-reviews/{review['id']}",
            json={"assignedTo": "u1"},
            headers=HEADERS,
        )
        assert resp.json()["status"] == "in_progress"

        resp = client.patch(
            f"/api/v1/expert-reviews/{review['id']}",
            json={"status": "completed", "expertFeedback": "Correct"},
            headers=HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json()["expert_feedback"] == "Correct"

        resp = client.get("/api/v1/expert-reviews", params={"type": "risk_assessment"}, headers=HEADERS)
        assert [r["id"] for r in resp.json()] == [review["id"]]

    def test_expert_review_invalid_status_keeps_review_pending(self, client):
        review = client.post(
            "/api/v1/expert-reviews", json={"text": "Plain text."}, headers=HEADERS
        ).json()

        resp = client.patch(
            f"/api/v1/expert-reviews/{review['id']}",
            json={"assignedTo": "u1", "status": "rejected"},
            headers=HEADERS,
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

        loaded = client.get(f"/api/v1/expert-reviews/{review['id']}", headers=HEADERS).json()
        assert loaded["status"] == "pending"
        assert loaded["assignees"] == []

    def test_due_date_offset_is_converted_to_utc(self, client):
        resp = self._submit(client, dueDate="2026-03-01T10:00:00+02:00")
        assert resp.status_code == 201
        assert resp.json()["itemId"] == resp.json()["item_id"]
        assert resp.json()["item"]["due_date"].startswith("2026-03-01T08:00:00")

    def test_expert_review_get_rejects_plain_items(self, client):
        item_id = self._submit(client).json()["item_id"]
        resp = client.get(f"/api/v1/expert-reviews/{item_id}", headers=HEADERS)
        assert resp.status_code == 404
