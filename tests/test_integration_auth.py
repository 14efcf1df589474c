"""Integration tests for the authentication flow and abuse mitigation.

Covers:
- Registration and its role restriction
- Login, refresh, profile and logout
- Failed-login limiting (successful logins are not counted)
- IP blocking after repeated failures
"""

import pytest
from fastapi.testclient import TestClient

from stormcrm import app as app_module
from stormcrm.service.runtime import get_runtime, reset_runtime_for_tests
from stormcrm.storage.memory import DEMO_PASSWORD
from stormcrm.storage.statements import Partition


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def login(client, email, password=DEMO_PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_sales_rep(self, client):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "New.Rep@Example.com",
                "password": "password123",
                "firstName": "New",
                "lastName": "Rep",
                "phone": "(608) 555-0199",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "User registered successfully"
        assert data["user"]["email"] == "new.rep@example.com"
        assert data["user"]["role"] == "sales_rep"
        assert data["user"]["firstName"] == "New"
        assert "passwordHash" not in data["user"]
        assert data["accessToken"] and data["refreshToken"]

    def test_register_rejects_duplicate_email(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "ADMIN@example.com", "password": "password123",
                  "firstName": "Dup", "lastName": "User"},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "User already exists"

    def test_register_cannot_self_assign_admin(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "boss@example.com", "password": "password123",
                  "firstName": "Big", "lastName": "Boss", "role": "admin"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Insufficient permissions"

    def test_register_validates_fields(self, client):
        response = client.post(
            "/api/auth/register",
            json={"email": "not-an-email", "password": "short", "firstName": "A", "lastName": "Rep"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        fields = {d["field"] for d in body["details"]}
        assert {"email", "password", "firstName"} <= fields


class TestLoginAndSession:
    def test_login_seeded_admin(self, client):
        response = login(client, "admin@example.com")
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Login successful"
        assert data["user"]["role"] == "admin"
        assert data["user"]["lastLoginAt"]
        assert data["tokenType"] == "bearer"

    def test_login_wrong_password(self, client):
        response = login(client, "admin@example.com", "wrong-password")
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid credentials"

    def test_login_disabled_account(self, client):
        runtime = get_runtime()
        for row in runtime.db.partitions[Partition.USERS].values():
            if row["email"] == "manager@example.com":
                row["is_active"] = False
        response = login(client, "manager@example.com")
        assert response.status_code == 403
        assert response.json()["error"] == "Account disabled"

    def test_me_and_logout(self, client):
        token = login(client, "sales@example.com").json()["accessToken"]

        me = client.get("/api/auth/me", headers=bearer(token))
        assert me.status_code == 200
        assert me.json()["email"] == "sales@example.com"
        assert me.json()["role"] == "sales_rep"

        logout = client.post("/api/auth/logout", headers=bearer(token))
        assert logout.status_code == 200
        assert logout.json() == {"message": "Logout successful"}

    def test_refresh_issues_working_access_token(self, client):
        refresh_token = login(client, "manager@example.com").json()["refreshToken"]

        response = client.post("/api/auth/refresh", json={"refreshToken": refresh_token})
        assert response.status_code == 200
        access = response.json()["accessToken"]
        assert client.get("/api/auth/me", headers=bearer(access)).status_code == 200

    def test_refresh_rejects_access_token(self, client):
        access = login(client, "manager@example.com").json()["accessToken"]
        response = client.post("/api/auth/refresh", json={"refreshToken": access})
        assert response.status_code == 401
        assert response.json()["message"] == "Token refresh failed"


class TestAuthenticationFailures:
    def test_missing_header(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required", "message": "No token provided"}

    def test_lowercase_bearer_prefix_not_accepted(self, client):
        token = login(client, "sales@example.com").json()["accessToken"]
        response = client.get("/api/auth/me", headers={"Authorization": f"bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

    def test_garbage_token(self, client):
        response = client.get("/api/auth/me", headers=bearer("not.a.token"))
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication failed", "message": "Invalid or expired token"}

    def test_non_ascii_refresh_token_is_rejected(self, client):
        refresh_token = login(client, "sales@example.com").json()["refreshToken"]
        header, payload, _ = refresh_token.split(".")

        response = client.post("/api/auth/refresh", json={"refreshToken": f"{header}.{payload}.é"})
        assert response.status_code == 401
        assert response.json()["message"] == "Token refresh failed"

    def test_non_ascii_bearer_token_is_rejected(self, client):
        access = login(client, "sales@example.com").json()["accessToken"]
        header, payload, _ = access.split(".")
        forged = f"Bearer {header}.{payload}.\xe9".encode("latin-1")

        response = client.get("/api/auth/me", headers={"Authorization": forged})
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication failed"

        hail = client.get("/api/hail", headers={"Authorization": forged})
        assert hail.status_code == 200
        assert "lat" not in hail.json()["events"][0]


class TestRegisteredUserRoleGate:
    def test_registered_rep_denied_where_admin_allowed(self, client):
        registered = client.post(
            "/api/auth/register",
            json={"email": "storm.rep@example.com", "password": "hailseason1",
                  "firstName": "Storm", "lastName": "Rep", "role": "sales_rep"},
        )
        assert registered.status_code == 201
        assert registered.json()["user"]["role"] == "sales_rep"

        rep_login = login(client, "storm.rep@example.com", "hailseason1")
        assert rep_login.status_code == 200
        rep = bearer(rep_login.json()["accessToken"])
        assert client.get("/api/auth/me", headers=rep).json()["email"] == "storm.rep@example.com"

        admin = bearer(login(client, "admin@example.com").json()["accessToken"])
        lead_id = client.get("/api/leads", headers=admin).json()["leads"][0]["id"]
        campaign = {
            "name": "Post-storm outreach",
            "type": "sms",
            "template": "Storm damage? Reply for a free inspection.",
            "leads": [lead_id],
        }

        denied = client.post("/api/campaigns", json=campaign, headers=rep)
        assert denied.status_code == 403
        assert denied.json()["error"] == "Insufficient permissions"

        allowed = client.post("/api/campaigns", json=campaign, headers=admin)
        assert allowed.status_code == 201
        assert allowed.json()["leadIds"] == [lead_id]


class TestLoginRateLimit:
    def test_successful_logins_are_not_counted(self, client):
        for _ in range(8):
            assert login(client, "sales@example.com").status_code == 200

    def test_sixth_failure_in_window_is_limited(self, client):
        for _ in range(4):
            assert login(client, "sales@example.com", "bad-password").status_code == 401
        assert login(client, "sales@example.com").status_code == 200
        assert login(client, "sales@example.com", "bad-password").status_code == 401

        response = login(client, "sales@example.com", "bad-password")
        assert response.status_code == 429
        assert response.json()["error"] == "Too many requests"
        assert response.json()["retryAfter"] == "15 minutes"
        assert int(response.headers["Retry-After"]) <= 900

    def test_general_limit_headers_exposed(self, client):
        response = login(client, "sales@example.com", "bad-password")
        assert response.status_code == 401
        ok = client.get("/api/hail")
        assert ok.headers["X-RateLimit-Limit"] == "100"
        assert ok.headers["X-RateLimit-Remaining"] == "98"


class TestIPBlocking:
    @pytest.fixture
    def relaxed_auth_limit(self, monkeypatch):
        monkeypatch.setenv("AUTH_RATE_LIMIT_MAX_REQUESTS", "100")
        reset_runtime_for_tests()

    def test_ten_failures_block_every_api_route(self, client, relaxed_auth_limit):
        for _ in range(10):
            assert login(client, "admin@example.com", "guess").status_code == 401

        blocked = client.get("/api/hail")
        assert blocked.status_code == 429
        body = blocked.json()
        assert body["error"] == "IP temporarily blocked"
        assert body["message"] == "Too many failed attempts. Please try again later."
        assert body["retryAfter"].endswith("+00:00")

        # Correct credentials do not lift the block
        assert login(client, "admin@example.com").status_code == 429

    def test_health_is_not_blocked(self, client, relaxed_auth_limit):
        for _ in range(10):
            login(client, "admin@example.com", "guess")
        assert client.get("/health").status_code == 200

    def test_successful_login_clears_failures(self, client, relaxed_auth_limit):
        for _ in range(9):
            login(client, "admin@example.com", "guess")
        assert login(client, "admin@example.com").status_code == 200
        assert get_runtime().blocklist.failure_count("testclient") == 0
        assert login(client, "admin@example.com", "guess").status_code == 401
        assert client.get("/api/hail").status_code == 200
