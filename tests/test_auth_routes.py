"""
tests/test_auth_routes.py -- Integration tests for the /api/auth and /api/audit routes.

Covers:
  - Registration: 201, field-specific 400 and 409, one audit record each way
  - Login over Basic auth: token pair, cookie, no-store; generic 401;
    blocked 403; missing header
  - Refresh rotation over HTTP, including replay of a spent token
  - Logout of one session and of all devices
  - Self-service credential changes and their session consequences
  - Administrative block/unblock and role changes (actor vs initiator)
  - Read-only audit endpoints for administrators
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from audit.models import AuditAction, AuditStatus
from auth.models import Role
from core.database import utcnow
from tests.helpers import PASSWORD, basic_header, bearer, make_account

# 42 characters but 82 UTF-8 bytes, past what bcrypt can hash.
OVERSIZED_PASSWORD = "A!" + "\u00e9" * 40


@pytest.fixture
def state(client):
    return client.app.state


def _records(state, action: AuditAction) -> list:
    return state.audit.store.by_action(action)


def _login(client, identifier: str = "alice", secret: str = PASSWORD):
    return client.post("/api/auth/login", headers=basic_header(identifier, secret))


def _admin_token(state, username: str = "root") -> tuple:
    admin = make_account(state.accounts, username, role=Role.ADMINISTRATOR)
    return admin, state.tokens.create_access_token(admin)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def _body(self, **overrides) -> dict:
        body = {"username": "new.user", "email": "New.User@Example.com", "password": PASSWORD, "fullName": "New User"}
        body.update(overrides)
        return body

    def test_created(self, client, state, notifier) -> None:
        resp = client.post("/api/auth/register", json=self._body())
        assert resp.status_code == 201
        data = resp.json()
        assert data["username"] == "new.user"
        assert data["email"] == "new.user@example.com"
        assert data["role"] == "citizen"
        assert data["isActive"] is True
        assert data["authMethods"] == {"local": True, "google": False}
        assert "password" not in data and "passwordHash" not in data

        records = _records(state, AuditAction.USER_REGISTRATION)
        assert len(records) == 1
        assert records[0].status is AuditStatus.SUCCESS
        assert records[0].actor_id == data["id"]
        assert [n.template for n in notifier.sent] == ["welcome"]

    def test_registration_does_not_log_in(self, client) -> None:
        resp = client.post("/api/auth/register", json=self._body())
        assert "accessToken" not in resp.json()

    def test_then_login(self, client) -> None:
        client.post("/api/auth/register", json=self._body())
        assert _login(client, "new.user@example.com").status_code == 200

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"username": "ab"}, "username"),
            ({"username": "bad__name"}, "username"),
            ({"email": "not-an-email"}, "email"),
            ({"password": "alllowercase1!"}, "password"),
            ({"password": "NoSpecial123"}, "password"),
            ({"password": "Sh0rt!"}, "password"),
            ({"password": OVERSIZED_PASSWORD}, "password"),
        ],
    )
    def test_invalid_input(self, client, state, overrides: dict, field: str) -> None:
        resp = client.post("/api/auth/register", json=self._body(**overrides))
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == field
        assert not state.accounts.has_accounts()

    def test_missing_field(self, client) -> None:
        body = self._body()
        del body["email"]
        resp = client.post("/api/auth/register", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "email"

    def test_duplicate_username(self, client, state) -> None:
        make_account(state.accounts, "new.user", email="other@example.com")
        resp = client.post("/api/auth/register", json=self._body())
        assert resp.status_code == 409
        assert resp.json()["error"]["field"] == "username"
        failed = _records(state, AuditAction.USER_REGISTRATION)
        assert [r.status for r in failed] == [AuditStatus.FAILED]

    def test_duplicate_email_case_insensitive(self, client, state) -> None:
        make_account(state.accounts, "someone", email="new.user@example.com")
        resp = client.post("/api/auth/register", json=self._body())
        assert resp.status_code == 409
        assert resp.json()["error"]["field"] == "email"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success(self, client, state) -> None:
        alice = make_account(state.accounts, "alice", role=Role.OPERATOR)
        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["tokenType"] == "bearer"
        assert data["role"] == "operator"
        assert data["expiresIn"] == state.settings.access_token_ttl_seconds
        assert resp.headers["cache-control"] == "no-store"
        cookie = resp.headers["set-cookie"]
        assert "access_token=" in cookie and "httponly" in cookie.lower()

        claims = state.tokens.decode_access_token(data["accessToken"])
        assert claims.account_id == alice.id
        records = _records(state, AuditAction.LOGIN)
        assert len(records) == 1
        assert records[0].actor_id == alice.id

    def test_by_email(self, client, state) -> None:
        make_account(state.accounts, "alice", email="alice@example.com")
        assert _login(client, "ALICE@example.com").status_code == 200

    def test_secret_may_contain_colon(self, client, state) -> None:
        make_account(state.accounts, "alice", password="Pa:ss!word1")
        assert _login(client, "alice", "Pa:ss!word1").status_code == 200

    def test_wrong_password_and_unknown_user_look_the_same(self, client, state) -> None:
        make_account(state.accounts, "alice")
        wrong = _login(client, "alice", "Wrong!pass1")
        unknown = _login(client, "nobody", "Wrong!pass1")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        # One failed_login each, nothing else.
        assert state.audit.store.count() == 2
        assert state.audit.store.count(action=AuditAction.FAILED_LOGIN) == 2

    def test_blocked(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        state.accounts.set_active(alice.id, False)
        resp = _login(client)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "ACCOUNT_BLOCKED"
        assert state.audit.store.count() == 1

    def test_missing_credentials(self, client, state) -> None:
        resp = client.post("/api/auth/login")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "credentials_missing"
        assert state.audit.store.count(action=AuditAction.ACCESS_DENIED) == 1

    def test_register_login_and_call_protected_route(self, client) -> None:
        body = {"username": "alice", "email": "alice@x.com", "password": "Secr3t!@"}
        assert client.post("/api/auth/register", json=body).status_code == 201
        login = _login(client, "alice", "Secr3t!@")
        assert login.status_code == 200
        tokens = login.json()
        assert tokens["accessToken"] and tokens["refreshToken"]
        assert client.get("/api/auth/me", headers=bearer(tokens["accessToken"])).status_code == 200

    def test_repeated_failures_do_not_lock_account(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        for _ in range(5):
            assert _login(client, "alice", "Wrong!pass1").status_code == 401
        failed = _records(state, AuditAction.FAILED_LOGIN)
        assert len(failed) == 5
        assert all(r.actor_id == alice.id for r in failed)
        assert _login(client).status_code == 200

    def test_malformed_basic_value(self, client) -> None:
        resp = client.post("/api/auth/login", headers={"Authorization": "Basic !!!not-base64"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "credentials_missing"


# ---------------------------------------------------------------------------
# Refresh and logout
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_rotation(self, client, state) -> None:
        make_account(state.accounts, "alice")
        first = _login(client).json()
        resp = client.post("/api/auth/refresh-token", json={"refreshToken": first["refreshToken"]})
        assert resp.status_code == 200
        second = resp.json()
        assert second["refreshToken"] != first["refreshToken"]
        assert resp.headers["cache-control"] == "no-store"

        replay = client.post("/api/auth/refresh-token", json={"refreshToken": first["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "TOKEN_INVALID"

        statuses = sorted(r.status.value for r in _records(state, AuditAction.TOKEN_REFRESH))
        assert statuses == ["failed", "success"]

    def test_missing_token(self, client) -> None:
        resp = client.post("/api/auth/refresh-token", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "refreshToken"

    def test_garbage_token(self, client) -> None:
        resp = client.post("/api/auth/refresh-token", json={"refreshToken": "garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "TOKEN_INVALID"


class TestLogout:
    def test_revokes_current_session(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        here = _login(client).json()
        elsewhere = _login(client).json()

        resp = client.post("/api/auth/logout", headers=bearer(here["accessToken"]))
        assert resp.status_code == 200
        assert resp.json()["sessionsRevoked"] == 1

        assert client.post("/api/auth/refresh-token", json={"refreshToken": here["refreshToken"]}).status_code == 401
        assert client.post("/api/auth/refresh-token", json={"refreshToken": elsewhere["refreshToken"]}).status_code == 200

        records = _records(state, AuditAction.LOGOUT)
        assert len(records) == 1
        assert records[0].actor_id == alice.id

    def test_all_devices(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        tokens = [_login(client).json() for _ in range(3)]
        resp = client.post("/api/auth/logout", json={"allDevices": True}, headers=bearer(tokens[0]["accessToken"]))
        assert resp.json()["sessionsRevoked"] == 3
        assert state.refresh_tokens.list_active(alice.id) == []
        assert len(_records(state, AuditAction.LOGOUT_ALL)) == 1
        assert _records(state, AuditAction.LOGOUT) == []

    def test_requires_token(self, client) -> None:
        assert client.post("/api/auth/logout").status_code == 401


# ---------------------------------------------------------------------------
# Self-service credentials
# ---------------------------------------------------------------------------


class TestCredentialsUpdate:
    URL = "/api/auth/profile/credentials"

    def _older_token(self, state, account) -> str:
        return state.tokens.create_access_token(account, issued_at=utcnow() - timedelta(seconds=5))

    def test_password_change(self, client, state, notifier) -> None:
        alice = make_account(state.accounts, "alice")
        session = _login(client).json()
        token = self._older_token(state, alice)

        resp = client.patch(
            self.URL, json={"currentPassword": PASSWORD, "newPassword": "N3w!password"}, headers=bearer(token)
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["changed"] == ["password"]
        assert data["sessionsRevoked"] == 1

        # Older access tokens are stale, refresh tokens revoked, old password gone.
        assert client.get("/api/auth/me", headers=bearer(token)).json()["error"]["code"] == "TOKEN_STALE"
        assert client.post("/api/auth/refresh-token", json={"refreshToken": session["refreshToken"]}).status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, "alice", "N3w!password").status_code == 200

        assert len(_records(state, AuditAction.CREDENTIALS_UPDATE)) == 1
        assert len(_records(state, AuditAction.PASSWORD_CHANGE)) == 1
        assert notifier.sent[-1].template == "credentials_changed"

    def test_username_change_keeps_sessions(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        token = self._older_token(state, alice)
        resp = client.patch(self.URL, json={"currentPassword": PASSWORD, "username": "alice2"}, headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["changed"] == ["username"]
        assert resp.json()["sessionsRevoked"] == 0
        assert client.get("/api/auth/me", headers=bearer(token)).status_code == 200
        assert _records(state, AuditAction.PASSWORD_CHANGE) == []

    def test_wrong_current_password(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        token = self._older_token(state, alice)
        resp = client.patch(
            self.URL, json={"currentPassword": "Wrong!pass1", "newPassword": "N3w!password"}, headers=bearer(token)
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["field"] == "currentPassword"
        assert _login(client).status_code == 200
        records = _records(state, AuditAction.CREDENTIALS_UPDATE)
        assert [r.status for r in records] == [AuditStatus.FAILED]
        assert records[0].actor_id == alice.id

    def test_email_conflict(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        make_account(state.accounts, "bob", email="bob@example.com")
        resp = client.patch(
            self.URL,
            json={"currentPassword": PASSWORD, "email": "BOB@example.com"},
            headers=bearer(self._older_token(state, alice)),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["field"] == "email"

    def test_weak_new_password(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        resp = client.patch(
            self.URL,
            json={"currentPassword": PASSWORD, "newPassword": "weak"},
            headers=bearer(self._older_token(state, alice)),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "newPassword"

    def test_oversized_new_password(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        resp = client.patch(
            self.URL,
            json={"currentPassword": PASSWORD, "newPassword": OVERSIZED_PASSWORD},
            headers=bearer(self._older_token(state, alice)),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "newPassword"
        assert _login(client).status_code == 200

    def test_nothing_to_update(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        resp = client.patch(self.URL, json={"currentPassword": PASSWORD}, headers=bearer(self._older_token(state, alice)))
        assert resp.status_code == 400

    def test_unexpected_error_is_audited_once(self, client, state, monkeypatch) -> None:
        alice = make_account(state.accounts, "alice")

        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(state.account_service, "update_credentials", explode)
        # Same app and state; no lifespan, and the 500 is returned instead of raised.
        plain = TestClient(client.app, raise_server_exceptions=False)
        resp = plain.patch(
            self.URL,
            json={"currentPassword": PASSWORD, "newPassword": "N3w!password"},
            headers=bearer(self._older_token(state, alice)),
        )
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "internal_error"
        records = _records(state, AuditAction.CREDENTIALS_UPDATE)
        assert len(records) == 1
        assert records[0].status is AuditStatus.FAILED
        assert records[0].actor_id == alice.id
        assert records[0].metadata["statusCode"] == 500
        assert records[0].metadata["error"] == "RuntimeError"

    def test_provider_only_account(self, client, state) -> None:
        gina = make_account(state.accounts, "gina", password=None, google_id="g-1")
        resp = client.patch(
            self.URL,
            json={"currentPassword": "anything", "newPassword": "N3w!password"},
            headers=bearer(self._older_token(state, gina)),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "local_auth_disabled"


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestUserAdministration:
    def test_block_and_unblock(self, client, state) -> None:
        admin, token = _admin_token(state)
        target = make_account(state.accounts, "target")
        session = _login(client, "target").json()

        resp = client.patch(f"/api/auth/users/{target.id}", json={"isActive": False}, headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["isActive"] is False
        assert resp.json()["blockedAt"] is not None
        assert state.refresh_tokens.list_active(target.id) == []
        assert client.get("/api/auth/me", headers=bearer(session["accessToken"])).status_code == 403

        resp = client.patch(f"/api/auth/users/{target.id}", json={"isActive": True}, headers=bearer(token))
        assert resp.json()["isActive"] is True
        assert resp.json().get("blockedAt") is None

        block = _records(state, AuditAction.USER_BLOCK)
        unblock = _records(state, AuditAction.USER_UNBLOCK)
        assert len(block) == len(unblock) == 1
        assert block[0].actor_id == target.id
        assert block[0].initiator_id == admin.id
        assert block[0].metadata["isActive"] == {"old": True, "new": False}

    def test_role_and_block_in_one_request(self, client, state) -> None:
        _, token = _admin_token(state)
        target = make_account(state.accounts, "target")
        resp = client.patch(
            f"/api/auth/users/{target.id}", json={"role": "operator", "isActive": False}, headers=bearer(token)
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "operator"
        assert len(_records(state, AuditAction.USER_BLOCK)) == 1
        assert len(_records(state, AuditAction.ROLE_CHANGE)) == 1

    def test_cannot_block_self(self, client, state) -> None:
        admin, token = _admin_token(state)
        resp = client.patch(f"/api/auth/users/{admin.id}", json={"isActive": False}, headers=bearer(token))
        assert resp.status_code == 400
        assert state.accounts.get_by_id(admin.id).is_active
        failed = _records(state, AuditAction.USER_BLOCK)
        assert [r.status for r in failed] == [AuditStatus.FAILED]

    def test_cannot_demote_last_admin(self, client, state) -> None:
        admin, token = _admin_token(state)
        resp = client.patch(f"/api/auth/users/{admin.id}", json={"role": "citizen"}, headers=bearer(token))
        assert resp.status_code == 400
        assert state.accounts.get_by_id(admin.id).role is Role.ADMINISTRATOR

    def test_empty_patch(self, client, state) -> None:
        _, token = _admin_token(state)
        target = make_account(state.accounts, "target")
        resp = client.patch(f"/api/auth/users/{target.id}", json={}, headers=bearer(token))
        assert resp.status_code == 400

    def test_unknown_account(self, client, state) -> None:
        _, token = _admin_token(state)
        resp = client.patch("/api/auth/users/9999", json={"isActive": False}, headers=bearer(token))
        assert resp.status_code == 404

    def test_invalid_role(self, client, state) -> None:
        _, token = _admin_token(state)
        target = make_account(state.accounts, "target")
        resp = client.patch(f"/api/auth/users/{target.id}", json={"role": "superuser"}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "role"

    def test_list_filtered_by_role(self, client, state) -> None:
        _, token = _admin_token(state)
        make_account(state.accounts, "olga", role=Role.OPERATOR)
        make_account(state.accounts, "carl")
        resp = client.get("/api/auth/users", params={"role": "operator"}, headers=bearer(token))
        assert [u["username"] for u in resp.json()] == ["olga"]


# ---------------------------------------------------------------------------
# Audit endpoints
# ---------------------------------------------------------------------------


class TestAuditEndpoints:
    def test_account_history(self, client, state) -> None:
        _, token = _admin_token(state)
        alice = make_account(state.accounts, "alice")
        _login(client)
        _login(client, "alice", "Wrong!pass1")
        resp = client.get(f"/api/audit/accounts/{alice.id}", headers=bearer(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["page"] == 1
        actions = [r["action"] for r in data["records"]]
        assert actions == ["failed_login", "login"]
        assert data["records"][1]["actorId"] == alice.id

    def test_history_requires_admin(self, client, state) -> None:
        alice = make_account(state.accounts, "alice")
        token = state.tokens.create_access_token(alice)
        resp = client.get(f"/api/audit/accounts/{alice.id}", headers=bearer(token))
        assert resp.status_code == 403

    def test_initiator_trail(self, client, state) -> None:
        admin, token = _admin_token(state)
        target = make_account(state.accounts, "target")
        client.patch(f"/api/auth/users/{target.id}", json={"isActive": False}, headers=bearer(token))
        resp = client.get(f"/api/audit/initiators/{admin.id}", headers=bearer(token))
        assert [r["action"] for r in resp.json()] == ["user_block"]

    def test_search_window(self, client, state) -> None:
        _, token = _admin_token(state)
        make_account(state.accounts, "alice")
        _login(client)
        start = (utcnow() - timedelta(minutes=1)).isoformat()
        end = (utcnow() + timedelta(minutes=1)).isoformat()
        resp = client.get(
            "/api/audit/search", params={"action": "login", "start": start, "end": end}, headers=bearer(token)
        )
        assert resp.status_code == 200
        assert len(resp.json()) == 1

    def test_search_rejects_inverted_window(self, client, state) -> None:
        _, token = _admin_token(state)
        resp = client.get(
            "/api/audit/search",
            params={"action": "login", "start": "2025-02-01T00:00:00", "end": "2025-01-01T00:00:00"},
            headers=bearer(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "start"

    def test_search_unknown_action(self, client, state) -> None:
        _, token = _admin_token(state)
        resp = client.get("/api/audit/search", params={"action": "teleport"}, headers=bearer(token))
        assert resp.status_code == 400

    def test_no_write_endpoints(self, client, state) -> None:
        _, token = _admin_token(state)
        assert client.delete("/api/audit/accounts/1", headers=bearer(token)).status_code == 405
