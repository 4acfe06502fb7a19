"""
Plan access helpers, login rate limiting and operational endpoints.
"""
import asyncio
import resource

import pytest

import rate_limit
from config import settings
from models import Company, Plan
from observability import current_rss_mb
from plan_access import get_plan_context, is_module_enabled, normalize_limit, parse_features
from rate_limit import register_attempt, reset_login_rate_limit
from tests.conftest import unique_email


class _PlanSession:
    """Stands in for AsyncSession.get when only the plan lookup matters"""

    def __init__(self, plan):
        self.plan = plan

    async def get(self, model, pk):
        return self.plan


@pytest.mark.unit
class TestPlanAccess:
    @pytest.mark.parametrize("value,expected", [
        (None, None),
        (5, 5),
        (5.9, 5),
        ("10", 10),
        (-1, None),
        (float("inf"), None),
        ("abc", None),
        (True, None),
        (0, 0),
    ])
    def test_normalize_limit(self, value, expected):
        assert normalize_limit(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (True, True),
        (False, False),
        (1, True),
        (0, False),
        ("yes", True),
        ("ON", True),
        ("off", False),
        ("", False),
        (None, True),
    ])
    def test_is_module_enabled(self, value, expected):
        assert is_module_enabled({"reports": value}, "reports") is expected

    def test_missing_module_defaults_to_enabled(self):
        assert is_module_enabled({}, "reports") is True

    @pytest.mark.parametrize("max_users,expected", [
        (-1, 4),
        (None, 4),
        (2, 2),
    ])
    def test_plan_column_falls_back_to_features(self, max_users, expected):
        plan = Plan(id=1, name="custom", max_users=max_users, max_pets=None, features='{"users": 4, "pets": 20}')
        company = Company(name="X", status="active", current_plan_id=1)

        context = asyncio.run(get_plan_context(_PlanSession(plan), company))

        assert context["maxUsers"] == expected
        assert context["maxPets"] == 20

    def test_parse_features(self):
        assert parse_features('{"reports": true}') == {"reports": True}
        assert parse_features("not json") == {}
        assert parse_features("[1, 2]") == {}
        assert parse_features(None) == {}


@pytest.mark.unit
class TestRateLimitWindow:
    def test_window_resets(self, monkeypatch):
        monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_MAX", 2)
        reset_login_rate_limit()
        try:
            assert register_attempt("10.0.0.1", now=1000.0) == 0
            assert register_attempt("10.0.0.1", now=1001.0) == 0
            wait = register_attempt("10.0.0.1", now=1002.0)
            assert 0 < wait <= settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
            # Other addresses are counted separately
            assert register_attempt("10.0.0.2", now=1002.0) == 0
            # A new window starts once the old one has elapsed
            later = 1000.0 + settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
            assert register_attempt("10.0.0.1", now=later) == 0
        finally:
            reset_login_rate_limit()

    def test_expired_windows_are_pruned(self):
        reset_login_rate_limit()
        window = settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
        try:
            register_attempt("198.51.100.1", now=1000.0)
            register_attempt("198.51.100.2", now=1000.0 + window)

            later = 1000.0 + window + rate_limit.CLEANUP_INTERVAL_SECONDS
            register_attempt("198.51.100.3", now=later)

            assert "198.51.100.1" not in rate_limit._attempts
            assert "198.51.100.2" in rate_limit._attempts
            assert "198.51.100.3" in rate_limit._attempts
        finally:
            reset_login_rate_limit()


@pytest.mark.api
class TestLoginRateLimit:
    def test_too_many_attempts(self, client, monkeypatch):
        monkeypatch.setattr(settings, "LOGIN_RATE_LIMIT_MAX", 3)
        reset_login_rate_limit()
        headers = {"x-forwarded-for": "203.0.113.7"}
        payload = {"email": unique_email(), "password": "wrong"}
        try:
            for _ in range(3):
                assert client.post("/auth/login", json=payload, headers=headers).status_code == 401

            response = client.post("/auth/login", json=payload, headers=headers)
            assert response.status_code == 429
            assert response.json()["code"] == "RATE_LIMITED"
            assert int(response.headers["retry-after"]) > 0

            other = client.post("/auth/login", json=payload, headers={"x-forwarded-for": "203.0.113.8"})
            assert other.status_code == 401
        finally:
            reset_login_rate_limit()


@pytest.mark.api
class TestOperations:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "api"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"x-request-id": "abc-123"})

        assert response.headers["x-request-id"] == "abc-123"

    def test_metrics_and_logs_for_admins(self, client, tenant):
        client.get("/health")

        metrics = client.get("/metrics", headers=tenant["headers"]).json()
        assert metrics["total_requests"] > 0
        assert "200" in metrics["by_status"]

        logs = client.get("/api/logs", headers=tenant["headers"]).json()
        assert any("/health" in line for line in logs["lines"])

    @pytest.mark.unit
    def test_memory_is_current_not_peak(self):
        peak_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024

        assert 0 < current_rss_mb() <= peak_mb + 1

    def test_metrics_require_admin(self, client, tenant, invite_user):
        staff = invite_user(tenant)

        assert client.get("/metrics", headers=staff["headers"]).status_code == 403
        assert client.get("/metrics").status_code == 401

    def test_unknown_route_uses_error_format(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
