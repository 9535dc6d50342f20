"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/*.

These tests exercise the full stack: FastAPI routing -> CredentialVerifier /
TokenService -> stores -> response serialization and cookies.

Coverage:
  - Successful login: 200, access token, refresh cookie, audit entry
  - Credential enumeration resistance: identical 401 bodies
  - Login throttling: 429 with Retry-After on the sixth attempt
  - Refresh rotation via cookie (with CSRF) and via body
  - Replay of a rotated refresh token: 401 and a token_reuse_detected audit entry
  - Idempotent logout
  - /auth/status and /auth/me

Fixtures used (from conftest.py):
  - api: ApiEnv with principals admin / treasurer / member, all with TEST_SECRET.
"""

from __future__ import annotations

from audit.models import AuditFilters
from core.config import get_settings

SECRET = "correct-horse-battery"


def _login(api, identifier: str = "treasurer", secret: str = SECRET, remember: bool = False):
    return api.client.post(
        "/api/v1/auth/login",
        json={"identifier": identifier, "secret": secret, "remember": remember},
    )


def _csrf_headers(api) -> dict[str, str]:
    token = api.client.get("/api/v1/auth/csrf").json()["csrf_token"]
    return {get_settings().csrf_header_name: token}


class TestLogin:
    def test_success(self, api) -> None:
        resp = _login(api)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["principal_id"] == api.ids["treasurer"]
        assert data["identifier"] == "treasurer"
        assert data["expires_in"] == get_settings().access_token_ttl_seconds
        assert resp.headers["Cache-Control"] == "no-store"

        set_cookie = resp.headers["set-cookie"]
        assert get_settings().refresh_cookie_name in set_cookie
        assert "httponly" in set_cookie.lower()
        assert "samesite=strict" in set_cookie.lower()
        assert "Path=/api/v1/auth" in set_cookie

        entries, _ = api.state.audit.search(AuditFilters(action="login", actor_id=api.ids["treasurer"]))
        assert entries
        assert entries[0].ip_address == "testclient"

    def test_access_token_works(self, api) -> None:
        token = _login(api).json()["access_token"]
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["identifier"] == "treasurer"

    def test_unknown_and_wrong_secret_are_identical(self, api) -> None:
        unknown = _login(api, identifier="nobody")
        wrong = _login(api, secret="not-the-secret")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert "set-cookie" not in wrong.headers

    def test_secret_length_is_capped(self, api) -> None:
        resp = _login(api, secret="x" * 256)
        assert resp.status_code == 422

    def test_sixth_attempt_is_throttled(self, api) -> None:
        for _ in range(5):
            assert _login(api, secret="not-the-secret").status_code == 401
        resp = _login(api)
        assert resp.status_code == 429
        assert 0 < int(resp.headers["Retry-After"]) <= get_settings().login_window_seconds
        assert resp.json()["error"]["code"] == "rate_limited"


class TestRefresh:
    def test_cookie_refresh_rotates(self, api) -> None:
        _login(api)
        old_cookie = api.client.cookies.get(get_settings().refresh_cookie_name)
        resp = api.client.post("/api/v1/auth/refresh", headers=_csrf_headers(api))
        assert resp.status_code == 200, resp.text
        assert resp.json()["access_token"]
        new_cookie = api.client.cookies.get(get_settings().refresh_cookie_name)
        assert new_cookie and new_cookie != old_cookie

    def test_cookie_refresh_requires_csrf(self, api) -> None:
        _login(api)
        resp = api.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "csrf_failed"

    def test_body_refresh_needs_no_csrf(self, api) -> None:
        _login(api)
        raw = api.client.cookies.get(get_settings().refresh_cookie_name)
        api.client.cookies.clear()
        resp = api.client.post("/api/v1/auth/refresh", json={"refresh_token": raw})
        assert resp.status_code == 200, resp.text

    def test_missing_token(self, api) -> None:
        resp = api.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401

    def test_replay_is_rejected_and_audited(self, api) -> None:
        _login(api)
        raw = api.client.cookies.get(get_settings().refresh_cookie_name)
        api.client.cookies.clear()

        first = api.client.post("/api/v1/auth/refresh", json={"refresh_token": raw})
        assert first.status_code == 200
        # The rotated cookie would otherwise take precedence over the body.
        api.client.cookies.clear()
        replay = api.client.post("/api/v1/auth/refresh", json={"refresh_token": raw})
        assert replay.status_code == 401

        entries, _ = api.state.audit.search(AuditFilters(action="token_reuse_detected"))
        assert entries
        assert entries[0].actor_principal_id == api.ids["treasurer"]
        assert entries[0].entity_type == "refresh_token_family"
        assert replay.json()["error"]["code"] == "invalid_session"

    def test_failures_share_one_body(self, api) -> None:
        malformed = api.client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        unknown = api.client.post("/api/v1/auth/refresh", json={"refresh_token": "0" * 32 + "." + "a" * 43})
        assert malformed.status_code == unknown.status_code == 401
        assert malformed.json() == unknown.json()


class TestLogout:
    def test_logout_is_idempotent(self, api) -> None:
        _login(api)
        raw = api.client.cookies.get(get_settings().refresh_cookie_name)
        api.client.cookies.clear()

        for _ in range(2):
            resp = api.client.post("/api/v1/auth/logout", json={"refresh_token": raw})
            assert resp.status_code == 200
        assert api.client.post("/api/v1/auth/logout").status_code == 200
        assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": raw}).status_code == 401

    def test_logout_clears_cookie(self, api) -> None:
        _login(api)
        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert api.client.cookies.get(get_settings().refresh_cookie_name) is None


class TestSession:
    def test_status_anonymous(self, api) -> None:
        resp = api.client.get("/api/v1/auth/status")
        assert resp.status_code == 200
        assert resp.json() == {"authenticated": False, "principal_id": None, "identifier": None}

    def test_status_with_garbage_token_never_errors(self, api) -> None:
        resp = api.client.get("/api/v1/auth/status", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 200
        assert resp.json()["authenticated"] is False

    def test_status_authenticated(self, api) -> None:
        resp = api.client.get("/api/v1/auth/status", headers=api.headers("member"))
        assert resp.json()["authenticated"] is True
        assert resp.json()["principal_id"] == api.ids["member"]

    def test_me_requires_auth(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_lists_effective_permissions(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me", headers=api.headers("member"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["role"] == "Member"
        assert data["permissions"] == ["events.view", "members.view"]

    def test_csrf_endpoint_sets_readable_cookie(self, api) -> None:
        resp = api.client.get("/api/v1/auth/csrf")
        assert resp.status_code == 200
        data = resp.json()
        assert data["csrf_header"] == get_settings().csrf_header_name
        assert api.client.cookies.get(get_settings().csrf_cookie_name) == data["csrf_token"]
        assert "httponly" not in resp.headers["set-cookie"].lower()
