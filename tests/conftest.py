"""
Shared pytest configuration for the PetPro API tests.

The environment is configured before any application module is imported:
settings are read once at import time and the engine is created from them.
"""

import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timedelta

import pytest

TEST_DIR = tempfile.mkdtemp(prefix="petpro-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(TEST_DIR, 'test.sqlite')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["REMINDER_SCHEDULER_ENABLED"] = "false"
os.environ["SUBSCRIPTION_SCHEDULER_ENABLED"] = "false"
os.environ["EMAIL_TEST_MODE"] = "true"
os.environ["LOGIN_RATE_LIMIT_MAX"] = "10000"
os.environ["UPLOAD_DIR"] = os.path.join(TEST_DIR, "uploads")
os.environ["LOG_FILE"] = os.path.join(TEST_DIR, "logs.txt")
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["SEED_SUPERADMIN_EMAIL"] = "root@petpro.com.br"
os.environ["SEED_SUPERADMIN_PASSWORD"] = "root-pass-123"

import httpx  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from database import async_session_maker  # noqa: E402
from main import app  # noqa: E402

SUPERADMIN_EMAIL = os.environ["SEED_SUPERADMIN_EMAIL"]
SUPERADMIN_PASSWORD = os.environ["SEED_SUPERADMIN_PASSWORD"]


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@petclinica.com.br"


def unique_cnpj() -> str:
    return str(uuid.uuid4().int)[:14]


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def send_concurrently(*requests):
    """Fire (method, url, kwargs) requests at the app at the same time and return the responses"""
    async def _send():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            return await asyncio.gather(*(http.request(method, url, **kwargs) for method, url, kwargs in requests))
    return asyncio.run(_send())


def run_with_session(func, *args, **kwargs):
    """Run an async service function with a fresh database session"""
    async def _run():
        async with async_session_maker() as session:
            return await func(session, *args, **kwargs)
    return asyncio.run(_run())


# =============================================================================
# APP FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def client():
    """TestClient inside a context manager so startup (create tables, seed) runs once"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="session")
def superadmin_headers(client):
    response = client.post("/auth/login", json={"email": SUPERADMIN_EMAIL, "password": SUPERADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    return auth_headers(response.json()["token"])


@pytest.fixture(scope="session")
def plans(client, superadmin_headers):
    """Seeded plans keyed by name"""
    response = client.get("/api/admin/plans", headers=superadmin_headers)
    assert response.status_code == 200, response.text
    return {plan["name"]: plan for plan in response.json()}


@pytest.fixture
def register_company(client):
    """Factory: self-register a company and return its admin session"""
    def _register(**overrides):
        payload = {
            "email": unique_email("admin"),
            "password": "secret123",
            "full_name": "Maria Silva",
            "user_phone": "(11) 99999-8888",
            "company_name": f"Clínica {uuid.uuid4().hex[:6]}",
            "company_phone": "1133334444",
        }
        payload.update(overrides)
        response = client.post("/auth/register", json=payload)
        assert response.status_code == 201, response.text
        body = response.json()
        return {
            "headers": auth_headers(body["token"]),
            "company_id": body["company"]["id"],
            "user": body["user"],
            "email": payload["email"],
            "password": payload["password"],
        }
    return _register


@pytest.fixture
def tenant(register_company):
    """A fresh trial company with its admin logged in"""
    return register_company()


@pytest.fixture
def update_company(client, superadmin_headers):
    """Factory: change a company's status, plan or trial end through the admin console"""
    def _update(company_id: int, **fields):
        response = client.put(f"/api/admin/companies/{company_id}", json=fields, headers=superadmin_headers)
        assert response.status_code == 200, response.text
        return response.json()
    return _update


@pytest.fixture
def pro_tenant(tenant, update_company, plans):
    """A company moved to the active 'pro' plan (all modules, no limits)"""
    update_company(tenant["company_id"], plan_id=plans["pro"]["id"], status="active")
    return tenant


@pytest.fixture
def invite_user(client):
    """Factory: invite a user into the tenant and return their session headers"""
    def _invite(tenant: dict, role: str = None):
        email = unique_email("staff")
        response = client.post(
            "/api/invite",
            json={"full_name": "Equipe", "email": email, "password": "staff123"},
            headers=tenant["headers"],
        )
        assert response.status_code == 201, response.text
        user_id = response.json()["user"]["id"]

        if role:
            response = client.put(
                f"/api/settings/users/{user_id}", json={"role": role}, headers=tenant["headers"]
            )
            assert response.status_code == 200, response.text

        response = client.post("/auth/login", json={"email": email, "password": "staff123"})
        assert response.status_code == 200, response.text
        return {"id": user_id, "email": email, "headers": auth_headers(response.json()["token"])}
    return _invite


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================

@pytest.fixture
def make_owner(client):
    def _make(headers: dict, **overrides):
        payload = {"name": "Ana Souza", "email": "ana@petclinica.com.br", "phone": "11988887777"}
        payload.update(overrides)
        response = client.post("/api/clients", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        return response.json()
    return _make


@pytest.fixture
def make_pet(client):
    def _make(headers: dict, client_id: int, **overrides):
        payload = {"client_id": client_id, "name": "Thor", "species": "Cão", "breed": "Labrador"}
        payload.update(overrides)
        response = client.post("/api/pets", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        return response.json()
    return _make


@pytest.fixture
def make_service(client):
    def _make(headers: dict, **overrides):
        payload = {"name": "Consulta", "category": "Clínica", "duration_minutes": 30, "price": 100.0}
        payload.update(overrides)
        response = client.post("/api/services", json=payload, headers=headers)
        assert response.status_code == 201, response.text
        return response.json()
    return _make


@pytest.fixture
def booking(tenant, make_owner, make_pet, make_service):
    """Owner, pet and service ready to be scheduled in the tenant"""
    owner = make_owner(tenant["headers"])
    pet = make_pet(tenant["headers"], owner["id"])
    service = make_service(tenant["headers"])
    return {"tenant": tenant, "owner": owner, "pet": pet, "service": service}


@pytest.fixture
def make_appointment(client):
    def _make(booking: dict, when: datetime = None, **overrides):
        when = when or datetime.utcnow() + timedelta(days=3)
        payload = {
            "client_id": booking["owner"]["id"],
            "pet_id": booking["pet"]["id"],
            "service_id": booking["service"]["id"],
            "scheduled_at": when.replace(microsecond=0).isoformat(),
        }
        payload.update(overrides)
        response = client.post("/api/appointments", json=payload, headers=booking["tenant"]["headers"])
        assert response.status_code == 201, response.text
        return response.json()
    return _make
