"""
Role permissions, subscription blocking, plan limits, team and settings.
"""
import base64
import io
from datetime import datetime, timedelta

import pytest
from PIL import Image

from auth import default_permissions
from models import Company
from subscription_middleware import subscription_block_reason

pytestmark = pytest.mark.api


@pytest.mark.unit
class TestDefaults:
    def test_usuario_matrix(self):
        matrix = default_permissions("usuario")

        assert matrix["clients"] == {"can_view": True, "can_create": True, "can_edit": True, "can_delete": False}
        assert matrix["financial"]["can_view"] is False
        assert matrix["settings"]["can_view"] is False

    def test_unknown_role_has_nothing(self):
        assert not any(any(actions.values()) for actions in default_permissions("ghost").values())

    @pytest.mark.parametrize("status,trial_ends_at,blocked", [
        ("active", None, False),
        ("trial", datetime.utcnow() + timedelta(days=1), False),
        ("trial", datetime.utcnow() - timedelta(days=1), True),
        ("past_due", None, True),
        ("suspended", None, True),
        ("cancelled", None, True),
    ])
    def test_subscription_block_reason(self, status, trial_ends_at, blocked):
        company = Company(name="X", status=status, trial_ends_at=trial_ends_at)

        assert bool(subscription_block_reason(company)) is blocked


class TestPermissions:
    def test_usuario_cannot_reach_financial(self, client, tenant, invite_user):
        staff = invite_user(tenant)

        me = client.get("/auth/me", headers=staff["headers"]).json()
        assert me["role"] == "usuario"
        assert me["is_admin"] is False

        assert client.get("/api/clients", headers=staff["headers"]).status_code == 200
        response = client.get("/api/transactions", headers=staff["headers"])
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_company_override_grants_module(self, client, tenant, invite_user):
        staff = invite_user(tenant)

        response = client.put(
            "/api/settings/permissions/usuario",
            json={"permissions": [{"module": "financial", "can_view": True}]},
            headers=tenant["headers"],
        )
        assert response.status_code == 200
        financial = next(p for p in response.json()["permissions"] if p["module"] == "financial")
        assert financial["can_view"] is True
        assert financial["can_create"] is False

        assert client.get("/api/transactions", headers=staff["headers"]).status_code == 200
        # Modules without an override keep their defaults
        assert client.get("/api/clients", headers=staff["headers"]).status_code == 200

    def test_admin_permissions_are_fixed(self, client, tenant):
        response = client.put(
            "/api/settings/permissions/admin",
            json={"permissions": [{"module": "clients"}]},
            headers=tenant["headers"],
        )

        assert response.status_code == 400

    def test_unknown_module_rejected(self, client, tenant):
        response = client.put(
            "/api/settings/permissions/atendente",
            json={"permissions": [{"module": "spaceships", "can_view": True}]},
            headers=tenant["headers"],
        )

        assert response.status_code == 400
        assert response.json()["field"] == "permissions"

    def test_role_change_and_self_demotion(self, client, tenant, invite_user):
        staff = invite_user(tenant, role="supervisor")

        users = client.get("/api/settings/users", headers=tenant["headers"]).json()
        assert {u["email"]: u["role"] for u in users}[staff["email"]] == "supervisor"
        assert client.get("/api/transactions", headers=staff["headers"]).status_code == 200

        response = client.put(
            f"/api/settings/users/{tenant['user']['id']}", json={"role": "usuario"}, headers=tenant["headers"]
        )
        assert response.status_code == 400

    def test_non_admin_cannot_manage_team(self, client, tenant, invite_user):
        staff = invite_user(tenant)

        response = client.post(
            "/api/invite", json={"email": "x@petclinica.com.br", "password": "secret1"}, headers=staff["headers"]
        )

        assert response.status_code == 403

    def test_superadmin_without_company_is_denied_tenant_routes(self, client, superadmin_headers):
        assert client.get("/api/clients", headers=superadmin_headers).status_code == 403


class TestSubscription:
    @pytest.mark.parametrize("changes", [
        {"status": "past_due"},
        {"status": "suspended"},
        {"status": "cancelled"},
    ])
    def test_blocked_company_is_read_only(self, client, tenant, update_company, changes):
        update_company(tenant["company_id"], **changes)

        assert client.get("/api/clients", headers=tenant["headers"]).status_code == 200
        response = client.post("/api/clients", json={"name": "Novo"}, headers=tenant["headers"])
        assert response.status_code == 403

    def test_expired_trial_blocks_writes(self, client, tenant, update_company):
        update_company(tenant["company_id"], trial_ends_at=(datetime.utcnow() - timedelta(hours=1)).isoformat())

        response = client.post("/api/clients", json={"name": "Novo"}, headers=tenant["headers"])

        assert response.status_code == 403
        assert "teste" in response.json()["error"]

    def test_blocked_company_cannot_invite(self, client, tenant, update_company):
        update_company(tenant["company_id"], status="suspended")

        response = client.post(
            "/api/invite", json={"email": "y@petclinica.com.br", "password": "secret1"}, headers=tenant["headers"]
        )

        assert response.status_code == 403


class TestPlanLimits:
    def test_trial_user_limit(self, client, tenant, invite_user):
        invite_user(tenant)

        response = client.post(
            "/api/invite", json={"email": "z@petclinica.com.br", "password": "secret1"}, headers=tenant["headers"]
        )

        assert response.status_code == 403
        assert response.json()["code"] == "PLAN_LIMIT"

    def test_reports_module_disabled_on_trial(self, client, tenant):
        response = client.get("/api/reports/export", params={"type": "clients"}, headers=tenant["headers"])

        assert response.status_code == 403
        assert response.json()["code"] == "PLAN_LIMIT"


class TestSettings:
    def test_company_settings_roundtrip(self, client, tenant):
        response = client.put(
            "/api/settings/company",
            json={"website": "https://petclinica.com.br", "hours": "Seg-Sex 8h-18h"},
            headers=tenant["headers"],
        )
        assert response.status_code == 200

        body = client.get("/api/settings/company", headers=tenant["headers"]).json()
        assert body["website"] == "https://petclinica.com.br"
        assert body["hours"] == "Seg-Sex 8h-18h"

    def test_appearance_validation(self, client, tenant):
        ok = client.put("/api/settings/appearance", json={"theme": "dark"}, headers=tenant["headers"])
        bad = client.put("/api/settings/appearance", json={"theme": "neon"}, headers=tenant["headers"])

        assert ok.status_code == 200
        assert ok.json()["theme"] == "dark"
        assert bad.status_code == 400

    def test_security_is_per_user(self, client, tenant):
        response = client.put("/api/settings/security", json={"two_factor_enabled": True}, headers=tenant["headers"])

        assert response.status_code == 200
        assert client.get("/api/settings/security", headers=tenant["headers"]).json()["two_factor_enabled"] is True

    def test_companies_list_for_tenant_and_superadmin(self, client, tenant, superadmin_headers):
        own = client.get("/api/companies", headers=tenant["headers"]).json()
        assert [c["id"] for c in own] == [tenant["company_id"]]
        assert own[0]["plan"] == "trial"
        assert own[0]["users"] == 1

        everything = client.get("/api/companies", params={"limit": 100}, headers=superadmin_headers).json()
        assert len(everything) >= 1


class TestProfile:
    def test_update_profile(self, client, tenant):
        response = client.put("/api/profile", json={"full_name": "Maria S. Souza"}, headers=tenant["headers"])

        assert response.status_code == 200
        assert response.json()["full_name"] == "Maria S. Souza"

    def test_avatar_upload_and_removal(self, client, tenant):
        buffer = io.BytesIO()
        Image.new("RGBA", (1600, 800), (200, 120, 40, 255)).save(buffer, format="PNG")
        data_url = "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()

        response = client.post(
            "/api/profile/avatar", json={"file_name": "me.png", "data_url": data_url}, headers=tenant["headers"]
        )
        assert response.status_code == 200
        avatar_url = response.json()["avatar_url"]
        assert avatar_url.endswith(".jpg")

        stored = Image.open(io.BytesIO(client.get(avatar_url).content))
        assert stored.format == "JPEG"
        assert max(stored.size) <= 1024

        assert client.delete("/api/profile/avatar", headers=tenant["headers"]).status_code == 200
        assert client.get("/auth/me", headers=tenant["headers"]).json()["user"]["avatar_url"] is None
