"""Tests for the visit/illness endpoints, history endpoint and error contract."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from src.api.dependencies import get_storage_adapter
from src.api.main import app
from tests.conftest import OUTSIDER_ID, OWNER_ID, PARENT_ID, READ_ONLY_ID, T0


@pytest.fixture
def client(duckdb_adapter):
    """Test client backed by the seeded in-memory DuckDB adapter."""
    app.dependency_overrides = {}
    app.dependency_overrides[get_storage_adapter] = lambda: duckdb_adapter

    yield TestClient(app)

    app.dependency_overrides.clear()


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


class TestGetEntity:
    """Tests for GET /api/visits/{id}."""

    def test_get_visit(self, client, visit_row):
        response = client.get(f"/api/visits/{visit_row['id']}", headers=as_user(READ_ONLY_ID))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == visit_row["id"]
        assert data["visit_date"] == "2026-01-15"
        assert data["illnesses"] == ["flu"]
        assert data["updated_at"] == "2026-01-15T09:30:00"

    def test_outsider_gets_404(self, client, visit_row):
        response = client.get(f"/api/visits/{visit_row['id']}", headers=as_user(OUTSIDER_ID))

        assert response.status_code == 404
        body = response.json()
        assert body["error"]["type"] == "NotFoundError"
        assert body["meta"]["path"] == f"/api/visits/{visit_row['id']}"

    def test_missing_user_header(self, client, visit_row):
        response = client.get(f"/api/visits/{visit_row['id']}")

        assert response.status_code == 401

    def test_invalid_user_header(self, client, visit_row):
        response = client.get(f"/api/visits/{visit_row['id']}", headers={"X-User-Id": "alice"})

        assert response.status_code == 401


class TestUpdateEntity:
    """Tests for PUT /api/visits/{id}."""

    def test_partial_update(self, client, visit_row):
        response = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"temperature": 99.0, "updated_at": "2026-01-15T09:30:00.000Z"},
            headers=as_user(OWNER_ID)
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["temperature"] == 99.0
        assert data["notes"] == "Fever since Tuesday"
        assert data["updated_at"] != "2026-01-15T09:30:00"

    def test_stale_version_conflict(self, client, visit_row):
        response = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"temperature": 99.0, "updated_at": "2026-01-15T09:25:00Z"},
            headers=as_user(OWNER_ID)
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"]["type"] == "ConflictError"
        assert body["currentVersion"] == "2026-01-15T09:30:00Z"
        assert body["yourVersion"] == "2026-01-15T09:25:00Z"

    def test_second_save_with_old_stamp_conflicts(self, client, visit_row):
        """The stamp returned by one save is the one the next save must send."""
        first = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"notes": "B's note", "updated_at": "2026-01-15T09:30:00Z"},
            headers=as_user(PARENT_ID)
        )
        assert first.status_code == 200

        stale = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"notes": "A's note", "updated_at": "2026-01-15T09:30:00Z"},
            headers=as_user(OWNER_ID)
        )
        fresh = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"notes": "A's note", "updated_at": first.json()["data"]["updated_at"]},
            headers=as_user(OWNER_ID)
        )

        assert stale.status_code == 409
        assert fresh.status_code == 200

    def test_read_only_member_forbidden(self, client, visit_row):
        response = client.put(f"/api/visits/{visit_row['id']}", json={"notes": "x"}, headers=as_user(READ_ONLY_ID))

        assert response.status_code == 403

    def test_outsider_not_found(self, client, visit_row):
        response = client.put(f"/api/visits/{visit_row['id']}", json={"notes": "x"}, headers=as_user(OUTSIDER_ID))

        assert response.status_code == 404

    def test_validation_error_names_field(self, client, visit_row):
        response = client.put(
            f"/api/visits/{visit_row['id']}", json={"heart_rate": 300}, headers=as_user(OWNER_ID)
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["field"] == "heart_rate"
        assert "heart_rate must be at most 250" in error["message"]

    def test_invalid_version_stamp(self, client, visit_row):
        response = client.put(
            f"/api/visits/{visit_row['id']}",
            json={"notes": "x", "updated_at": "last tuesday"},
            headers=as_user(OWNER_ID)
        )

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "updated_at"

    def test_body_must_be_object(self, client, visit_row):
        response = client.put(f"/api/visits/{visit_row['id']}", json=["notes"], headers=as_user(OWNER_ID))

        assert response.status_code == 400

    def test_missing_visit(self, client, family):
        response = client.put("/api/visits/424242", json={"notes": "x"}, headers=as_user(OWNER_ID))

        assert response.status_code == 404


class TestHistory:
    """Tests for GET /api/visits/{id}/history."""

    def test_history_after_update(self, client, visit_row):
        client.put(
            f"/api/visits/{visit_row['id']}",
            json={"temperature": 99.0},
            headers={**as_user(OWNER_ID), "X-Request-ID": "req-abc"}
        )

        response = client.get(f"/api/visits/{visit_row['id']}/history", headers=as_user(READ_ONLY_ID))

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {
            "page": 1, "limit": 50, "total": 1, "total_pages": 1,
            "has_next": False, "has_previous": False,
        }
        event = body["data"][0]
        assert event["action"] == "updated"
        assert event["user_id"] == OWNER_ID
        assert event["summary"] == "Temperature: 101.5 → 99.0"
        assert event["changes"] == {"temperature": {"before": 101.5, "after": 99.0}}
        assert event["request_id"] == "req-abc"

    def test_no_op_update_adds_no_history(self, client, visit_row):
        client.put(f"/api/visits/{visit_row['id']}", json={"temperature": "101.5"}, headers=as_user(OWNER_ID))

        response = client.get(f"/api/visits/{visit_row['id']}/history", headers=as_user(OWNER_ID))

        assert response.json()["data"] == []

    def test_limit_is_clamped(self, client, duckdb_adapter, visit_row):
        for i in range(3):
            duckdb_adapter.append_audit_event({
                "entity_type": "visit", "entity_id": visit_row["id"], "user_id": OWNER_ID,
                "action": "updated", "changes": {"title": {"before": None, "after": f"t{i}"}},
                "changed_at": T0 + timedelta(seconds=i),
            })

        response = client.get(
            f"/api/visits/{visit_row['id']}/history", params={"limit": 9999}, headers=as_user(OWNER_ID)
        )

        assert response.status_code == 200
        assert response.json()["pagination"]["limit"] == 200
        assert len(response.json()["data"]) == 3

    def test_pagination_meta(self, client, duckdb_adapter, visit_row):
        for i in range(5):
            duckdb_adapter.append_audit_event({
                "entity_type": "visit", "entity_id": visit_row["id"], "user_id": OWNER_ID,
                "action": "updated", "changes": {"title": {"before": None, "after": f"t{i}"}},
                "changed_at": T0 + timedelta(seconds=i),
            })

        response = client.get(
            f"/api/visits/{visit_row['id']}/history", params={"page": 2, "limit": 2}, headers=as_user(OWNER_ID)
        )

        pagination = response.json()["pagination"]
        assert pagination["total"] == 5
        assert pagination["total_pages"] == 3
        assert pagination["has_next"] is True
        assert pagination["has_previous"] is True

    def test_legacy_event_falls_back_to_stored_summary(self, client, duckdb_adapter, visit_row):
        duckdb_adapter.append_audit_event({
            "entity_type": "visit", "entity_id": visit_row["id"], "user_id": None,
            "action": "updated", "changes": {"_legacy": "Changed notes"},
            "summary": "Updated visit notes", "changed_at": T0,
        })

        response = client.get(f"/api/visits/{visit_row['id']}/history", headers=as_user(OWNER_ID))

        assert response.json()["data"][0]["summary"] == "Updated visit notes"

    def test_outsider_gets_404(self, client, visit_row):
        response = client.get(f"/api/visits/{visit_row['id']}/history", headers=as_user(OUTSIDER_ID))

        assert response.status_code == 404


class TestCreateAndDelete:
    """Tests for POST and DELETE."""

    def test_create_illness(self, client, family):
        response = client.post(
            "/api/illnesses",
            json={"child_id": family.child_id, "start_date": "2026-03-01", "illness_types": ["covid"]},
            headers=as_user(PARENT_ID)
        )

        assert response.status_code == 201
        illness = response.json()["data"]
        assert illness["illness_types"] == ["covid"]

        history = client.get(f"/api/illnesses/{illness['id']}/history", headers=as_user(PARENT_ID)).json()
        assert history["data"][0]["action"] == "created"
        assert history["data"][0]["summary"] == "Illness created"

    def test_illness_end_date_rule(self, client, family):
        created = client.post(
            "/api/illnesses",
            json={"child_id": family.child_id, "start_date": "2026-03-05"},
            headers=as_user(OWNER_ID)
        ).json()["data"]

        response = client.put(
            f"/api/illnesses/{created['id']}", json={"end_date": "2026-03-01"}, headers=as_user(OWNER_ID)
        )

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "end_date"

    def test_delete_visit(self, client, visit_row):
        response = client.delete(f"/api/visits/{visit_row['id']}", headers=as_user(OWNER_ID))

        assert response.status_code == 204
        assert client.get(f"/api/visits/{visit_row['id']}", headers=as_user(OWNER_ID)).status_code == 404


class TestHealthAndRequestIds:
    """Tests for the health endpoint and request id middleware."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"]["type"] == "duckdb"

    def test_request_id_generated(self, client):
        response = client.get("/api/health")

        assert response.headers["X-Request-ID"]
        assert "X-Process-Time" in response.headers

    def test_request_id_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "trace-123"})

        assert response.headers["X-Request-ID"] == "trace-123"
