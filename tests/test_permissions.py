"""
Tests for token verification, route decorators and the permission resolver.
"""
import pytest
from itsdangerous import URLSafeTimedSerializer

from mfg_tracker.auth.permissions import (
    has_permission,
    normalize_permissions,
    require_permission,
    resolve_operator_context,
)
from mfg_tracker.auth.utils import CallerIdentity, decode_token, issue_token
from mfg_tracker.errors import Forbidden, NotAuthorized
from mfg_tracker.models import db


class TestNormalizePermissions:

    def test_trims_and_deduplicates(self):
        assert normalize_permissions([" qc:hold", "qc:hold", "", None, "traveler:read"]) == [
            "qc:hold",
            "traveler:read",
        ]

    def test_single_string(self):
        assert normalize_permissions("traveler:read") == ["traveler:read"]

    def test_empty(self):
        assert normalize_permissions(None) == []

    def test_lowercases_before_deduplicating(self):
        assert normalize_permissions([" QC:Hold ", "qc:hold", "Traveler:READ"]) == [
            "qc:hold",
            "traveler:read",
        ]


class TestTokens:

    def test_round_trip(self, app):
        caller = decode_token(issue_token(7, "mfg"))
        assert caller == CallerIdentity(7, "mfg")

    def test_tampered_token_rejected(self, app):
        token = issue_token(7, "admin")
        assert decode_token(token[:-2] + "xx") is None

    def test_token_signed_with_other_key_rejected(self, app):
        forged = URLSafeTimedSerializer("other-key", salt="mfg-tracker-auth").dumps(
            {"sub": 1, "role": "admin"}
        )
        assert decode_token(forged) is None

    def test_unknown_role_rejected(self, app):
        assert decode_token(issue_token(7, "superuser")) is None


class TestResolveOperatorContext:

    def test_admin_holds_wildcard(self, admin_user):
        ctx = resolve_operator_context(CallerIdentity(admin_user.id, "admin"))
        assert ctx.is_admin is True
        assert has_permission(ctx, "anything:at:all")
        assert ctx.permissions_snapshot() == ["*"]
        assert ctx.actor_name == "System Admin"
        assert ctx.actor_login_id == "admin"

    def test_operator_permissions_loaded(self, operator):
        ctx = resolve_operator_context(CallerIdentity(operator.id, "mfg"))
        assert ctx.is_admin is False
        assert has_permission(ctx, "qc:hold")
        assert not has_permission(ctx, "admin:delete")
        assert ctx.work_center == "assembly_store"

    def test_missing_operator_not_authorized(self, app):
        with pytest.raises(NotAuthorized) as exc_info:
            resolve_operator_context(CallerIdentity(9999, "mfg"))
        assert exc_info.value.message == "Operator not authorized"

    def test_inactive_operator_not_authorized(self, operator):
        operator.is_active = False
        db.session.commit()
        with pytest.raises(NotAuthorized):
            resolve_operator_context(CallerIdentity(operator.id, "mfg"))

    def test_other_roles_forbidden(self, app):
        with pytest.raises(Forbidden):
            resolve_operator_context(CallerIdentity(1, "sales"))

    def test_mixed_case_stored_permission_is_honoured(self, operator):
        operator.permissions = ["QC:Hold"]
        db.session.commit()
        ctx = resolve_operator_context(CallerIdentity(operator.id, "mfg"))
        require_permission(ctx, "qc:hold")
        assert has_permission(ctx, "QC:HOLD")

    @pytest.mark.parametrize("permission", [None, ""])
    def test_empty_permission_is_always_held(self, operator, permission):
        operator.permissions = []
        db.session.commit()
        ctx = resolve_operator_context(CallerIdentity(operator.id, "mfg"))
        assert has_permission(ctx, permission) is True

    def test_permission_changes_apply_immediately(self, operator):
        operator.permissions = ["traveler:read"]
        db.session.commit()
        ctx = resolve_operator_context(CallerIdentity(operator.id, "mfg"))
        with pytest.raises(Forbidden) as exc_info:
            require_permission(ctx, "qc:hold")
        assert exc_info.value.message == "Missing permission: qc:hold"


class TestRouteDecorators:

    def test_missing_token_is_unauthorized(self, client, make_work_order):
        work_order = make_work_order("assembly")
        response = client.patch(f"/api/mfg/work-orders/{work_order.id}/stage", json={"stage": "stencil"})
        assert response.status_code == 401
        assert response.get_json()["message"] == "Unauthorized"

    def test_garbage_token_is_unauthorized(self, client):
        response = client.get(
            "/api/mfg/work-orders", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401

    def test_customer_role_is_unauthorized(self, client, app):
        headers = {"Authorization": f"Bearer {issue_token(5, 'customer')}"}
        response = client.get("/api/mfg/work-orders", headers=headers)
        assert response.status_code == 401

    def test_operator_cannot_use_admin_routes(self, client, operator_headers):
        response = client.get("/api/mfg/operators", headers=operator_headers)
        assert response.status_code == 401

    def test_inactive_operator_gets_403(self, client, operator, operator_headers):
        operator.is_active = False
        db.session.commit()
        response = client.get("/api/mfg/work-orders", headers=operator_headers)
        assert response.status_code == 403
        assert response.get_json()["message"] == "Operator not authorized"
