"""Integration tests for the HTTP authentication flow.

Tests the complete flow including:
- Registration
- Login with password
- Token refresh from body and cookie
- Logout and the protected-route guard
- One-time passwords
- Error envelope and headers
"""

import pytest
from fastapi.testclient import TestClient

from chatauth.app import create_app
from conftest import TEST_EMAIL, TEST_PASSWORD, make_settings


@pytest.fixture
def app():
    return create_app(make_settings())


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def registered(client):
    response = client.post(
        "/v1/auth/register",
        json={"email": TEST_EMAIL, "password": TEST_PASSWORD, "full_name": "Test User"},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, email=TEST_EMAIL, password=TEST_PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_creates_user(self, registered):
        assert registered["email"] == TEST_EMAIL
        assert registered["user_id"]

    def test_register_rejects_duplicate_email(self, client, registered):
        response = client.post(
            "/v1/auth/register",
            json={"email": TEST_EMAIL.upper(), "password": TEST_PASSWORD},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"

    def test_register_validates_input(self, client):
        assert client.post(
            "/v1/auth/register", json={"email": "not-an-email", "password": TEST_PASSWORD}
        ).status_code == 422
        assert client.post(
            "/v1/auth/register", json={"email": TEST_EMAIL, "password": "short"}
        ).status_code == 422


class TestLoginLogout:
    def test_login_logout_then_guard_fails(self, client, registered):
        login = _login(client)
        assert login.status_code == 200
        tokens = login.json()["data"]
        assert tokens["user_id"] == registered["user_id"]
        assert tokens["token_type"] == "bearer"

        me = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"] == {
            "user_id": registered["user_id"],
            "email": TEST_EMAIL,
            "status": "online",
        }

        logout = client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
        assert logout.status_code == 200
        assert logout.json()["data"]["logged_out"] is True

        after = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "unauthorized"

    def test_login_sets_http_only_cookies(self, client, registered):
        response = _login(client)

        headers = [h.lower() for h in response.headers.get_list("set-cookie")]
        assert len(headers) == 2
        assert all("httponly" in h and "samesite=lax" in h for h in headers)
        # Non-production environments do not demand HTTPS
        assert not any("secure" in h for h in headers)

    def test_cookie_session_reaches_guard_and_logout(self, client, registered):
        assert _login(client).status_code == 200

        assert client.get("/v1/auth/me").status_code == 200
        logout = client.post("/v1/auth/logout")
        assert logout.status_code == 200
        assert client.get("/v1/auth/me").status_code == 401

    @pytest.mark.parametrize(
        "email,password",
        [(TEST_EMAIL, "WrongPass1!"), ("nobody@example.com", TEST_PASSWORD)],
    )
    def test_bad_credentials_rejected_uniformly(self, client, registered, email, password):
        response = _login(client, email, password)

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "invalid_credentials",
            "message": "invalid email or password",
            "details": None,
        }

    def test_login_with_non_email_identifier_is_bad_credentials(self, client, registered):
        response = _login(client, "not-an-email")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_logout_without_token_rejected(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_guard_rejects_non_bearer_scheme(self, client, registered):
        token = _login(client).json()["data"]["access_token"]
        client.cookies.clear()

        response = client.get("/v1/auth/me", headers={"Authorization": f"Basic {token}"})

        assert response.status_code == 401


class TestRefresh:
    def test_refresh_rotates_once(self, client, registered):
        tokens = _login(client).json()["data"]
        client.cookies.clear()

        first = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        replay = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )

        assert first.status_code == 200
        assert first.json()["data"]["user_id"] == registered["user_id"]
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid token"

    def test_refresh_from_cookie(self, client, registered):
        old_access = _login(client).json()["data"]["access_token"]

        response = client.post("/v1/auth/refresh")

        assert response.status_code == 200
        new_access = response.json()["data"]["access_token"]
        assert new_access != old_access
        assert client.get("/v1/auth/me", headers=_bearer(old_access)).status_code == 401
        assert client.get("/v1/auth/me", headers=_bearer(new_access)).status_code == 200

    def test_refresh_without_token_rejected(self, client):
        assert client.post("/v1/auth/refresh").status_code == 401


class TestOneTimePassword:
    def test_issue_and_verify_once(self, client, registered):
        access = _login(client).json()["data"]["access_token"]

        issued = client.post("/v1/auth/one-time-password", headers=_bearer(access))
        assert issued.status_code == 200
        token = issued.json()["data"]["token"]

        verified = client.post("/v1/auth/one-time-password/verify", json={"token": token})
        again = client.post("/v1/auth/one-time-password/verify", json={"token": token})

        assert verified.status_code == 200
        assert verified.json()["data"]["user_id"] == registered["user_id"]
        assert again.status_code == 401

    def test_issue_requires_authentication(self, client):
        assert client.post("/v1/auth/one-time-password").status_code == 401


class TestAppSurface:
    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["database"]["status"] == "healthy"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_production_sets_secure_cookies_and_hsts(self):
        app = create_app(make_settings(app={"environment": "production"}))
        with TestClient(app, base_url="https://testserver") as client:
            client.post(
                "/v1/auth/register", json={"email": TEST_EMAIL, "password": TEST_PASSWORD}
            )
            response = _login(client)

        assert response.status_code == 200
        headers = [h.lower() for h in response.headers.get_list("set-cookie")]
        assert all("secure" in h for h in headers)
        assert "Strict-Transport-Security" in response.headers
