"""
Registration, login, session and password tests.
"""
import pytest

from tests.conftest import auth_headers, unique_cnpj, unique_email

pytestmark = pytest.mark.api


class TestRegister:
    def test_register_creates_trial_company_and_admin(self, client, tenant):
        response = client.get("/auth/me", headers=tenant["headers"])

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == tenant["email"]
        assert body["company"]["id"] == tenant["company_id"]
        assert body["is_admin"] is True
        assert body["is_superadmin"] is False
        assert body["role"] == "admin"
        assert body["plan"]["planName"] == "trial"
        assert body["plan"]["companyStatus"] == "trial"
        assert body["plan"]["maxUsers"] == 2

    def test_register_normalizes_phone_digits(self, tenant):
        assert tenant["user"]["phone"] == "11999998888"

    def test_duplicate_email_is_conflict(self, client, tenant, register_company):
        response = client.post("/auth/register", json={
            "email": tenant["email"].upper(),
            "password": "secret123",
            "full_name": "Outra Pessoa",
            "user_phone": "11999998888",
            "company_name": "Outra Clínica",
            "company_phone": "1133334444",
        })

        assert response.status_code == 409
        assert response.json() == {"error": "Este e-mail já está em uso.", "code": "CONFLICT", "field": "email"}

    def test_duplicate_cnpj_is_conflict(self, client, register_company):
        cnpj = unique_cnpj()
        register_company(company_cnpj=cnpj)

        response = client.post("/auth/register", json={
            "email": unique_email(),
            "password": "secret123",
            "full_name": "Outra Pessoa",
            "user_phone": "11999998888",
            "company_name": "Outra Clínica",
            "company_cnpj": cnpj,
            "company_phone": "1133334444",
        })

        assert response.status_code == 409
        assert response.json()["field"] == "company_cnpj"

    @pytest.mark.parametrize("field,value", [
        ("user_phone", "123"),
        ("company_phone", "abc"),
        ("company_cnpj", "12.345"),
        ("password", "123"),
    ])
    def test_invalid_fields_are_validation_errors(self, client, field, value):
        payload = {
            "email": unique_email(),
            "password": "secret123",
            "full_name": "Maria",
            "user_phone": "11999998888",
            "company_name": "Clínica",
            "company_phone": "1133334444",
        }
        payload[field] = value

        response = client.post("/auth/register", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["field"] == field


class TestCheckEmail:
    def test_taken_and_free_emails(self, client, tenant):
        taken = client.get("/auth/check-email", params={"email": tenant["email"]})
        free = client.get("/auth/check-email", params={"email": unique_email()})

        assert taken.json() == {"available": False}
        assert free.json() == {"available": True}

    def test_malformed_email(self, client):
        response = client.get("/auth/check-email", params={"email": "not-an-email"})

        assert response.status_code == 400
        assert response.json()["field"] == "email"


class TestLogin:
    def test_login_returns_token_user_and_company(self, client, tenant):
        response = client.post("/auth/login", json={"email": tenant["email"], "password": tenant["password"]})

        assert response.status_code == 200
        body = response.json()
        assert body["token"]
        assert body["user"]["email"] == tenant["email"]
        assert body["company"]["id"] == tenant["company_id"]

    def test_wrong_password(self, client, tenant):
        response = client.post("/auth/login", json={"email": tenant["email"], "password": "wrong-pass"})

        assert response.status_code == 401
        assert response.json() == {"error": "E-mail ou senha incorretos.", "code": "UNAUTHORIZED"}

    def test_unknown_email(self, client):
        response = client.post("/auth/login", json={"email": unique_email(), "password": "whatever"})

        assert response.status_code == 401

    def test_missing_and_bad_tokens(self, client):
        assert client.get("/auth/me").status_code == 401
        assert client.get("/auth/me", headers=auth_headers("garbage")).status_code == 401

    def test_superadmin_has_no_company(self, client, superadmin_headers):
        body = client.get("/auth/me", headers=superadmin_headers).json()

        assert body["is_superadmin"] is True
        assert body["company"] is None
        assert body["plan"] is None


class TestChangePassword:
    def test_change_password_then_login(self, client, tenant):
        response = client.post(
            "/auth/change-password",
            json={"current_password": tenant["password"], "new_password": "novaSenha1"},
            headers=tenant["headers"],
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True}

        old = client.post("/auth/login", json={"email": tenant["email"], "password": tenant["password"]})
        new = client.post("/auth/login", json={"email": tenant["email"], "password": "novaSenha1"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_wrong_current_password(self, client, tenant):
        response = client.post(
            "/auth/change-password",
            json={"current_password": "nope-nope", "new_password": "novaSenha1"},
            headers=tenant["headers"],
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Senha atual incorreta."
