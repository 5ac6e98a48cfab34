"""
Tests for admin operator management.
"""
from mfg_tracker.auth.utils import verify_password
from mfg_tracker.models import User, db


class TestOperatorAdmin:

    def test_create_operator(self, client, admin_headers):
        response = client.post("/api/mfg/operators", json={
            "name": "Line Lead",
            "email": "Lead@Example.com",
            "password": "secret1",
            "loginId": "LEAD1",
            "workCenter": "smt",
            "permissions": ["traveler:read", " traveler:read ", "qc:hold"],
        }, headers=admin_headers)
        assert response.status_code == 201
        data = response.get_json()["operator"]
        assert data["email"] == "lead@example.com"
        assert data["loginId"] == "lead1"
        assert data["role"] == "mfg"
        assert data["permissions"] == ["traveler:read", "qc:hold"]
        assert data["isActive"] is True
        assert "passwordHash" not in data

        stored = db.session.get(User, data["id"])
        assert verify_password(stored.password_hash, "secret1")

    def test_required_fields(self, client, admin_headers):
        response = client.post(
            "/api/mfg/operators", json={"email": "a@b.c"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Email, password, and loginId are required"

    def test_short_password(self, client, admin_headers):
        response = client.post("/api/mfg/operators", json={
            "email": "a@b.c", "password": "123", "loginId": "a",
        }, headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["message"] == "Password must be at least 6 characters"

    def test_duplicate_login_id(self, client, admin_headers, operator):
        response = client.post("/api/mfg/operators", json={
            "email": "other@example.com", "password": "secret1", "loginId": "Operator1",
        }, headers=admin_headers)
        assert response.status_code == 409
        assert response.get_json()["message"] == "Email or loginId already in use"

    def test_list_only_manufacturing_accounts(self, client, admin_headers, operator):
        response = client.get("/api/mfg/operators", headers=admin_headers)
        assert response.status_code == 200
        login_ids = [o["loginId"] for o in response.get_json()["operators"]]
        assert login_ids == ["operator1"]

    def test_list_filters_inactive(self, client, admin_headers, operator):
        response = client.get("/api/mfg/operators?isActive=false", headers=admin_headers)
        assert response.get_json()["operators"] == []

    def test_deactivation_locks_operator_out(self, client, admin_headers, operator, operator_headers):
        response = client.patch(
            f"/api/mfg/operators/{operator.id}", json={"isActive": False}, headers=admin_headers
        )
        assert response.status_code == 200
        assert response.get_json()["operator"]["isActive"] is False

        blocked = client.get("/api/mfg/work-orders", headers=operator_headers)
        assert blocked.status_code == 403

    def test_update_permissions(self, client, admin_headers, operator):
        response = client.patch(
            f"/api/mfg/operators/{operator.id}",
            json={"permissions": ["traveler:read"]},
            headers=admin_headers,
        )
        assert response.get_json()["operator"]["permissions"] == ["traveler:read"]

    def test_update_unknown_operator(self, client, admin_headers, admin_user):
        response = client.patch(
            f"/api/mfg/operators/{admin_user.id}", json={"name": "x"}, headers=admin_headers
        )
        assert response.status_code == 404
        assert response.get_json()["message"] == "Operator not found"
