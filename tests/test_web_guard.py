"""
tests/test_web_guard.py -- Integration tests for the UI route guard (web/routes.py).

Covers:
  - Unauthenticated visitors are sent to the login page with ?next=
  - Accounts whose role is too low go to /profile (audited)
  - Allowed accounts are forwarded to the frontend page
  - The httpOnly cookie set at login is accepted here
  - ?next= never carries a protocol-relative target [C2]
"""

from __future__ import annotations

import pytest

from audit.models import AuditAction
from auth.models import Role
from tests.helpers import PASSWORD, basic_header, bearer, make_account
from web.routes import _safe_path


@pytest.fixture
def frontend(client) -> str:
    return client.app.state.settings.frontend_url.rstrip("/")


def _token(client, username: str, role: Role) -> str:
    account = make_account(client.app.state.accounts, username, role=role)
    return client.app.state.tokens.create_access_token(account)


class TestUnauthenticated:
    def test_operator_redirects_to_login(self, client, frontend) -> None:
        resp = client.get("/operator")
        assert resp.status_code == 302
        assert resp.headers["location"] == f"{frontend}/auth?next=/operator"

    def test_nested_path_kept_in_next(self, client, frontend) -> None:
        resp = client.get("/admin/users/42")
        assert resp.headers["location"] == f"{frontend}/auth?next=/admin/users/42"

    def test_bad_token_redirects_to_login(self, client, frontend) -> None:
        resp = client.get("/admin", headers=bearer("garbage"))
        assert resp.headers["location"].startswith(f"{frontend}/auth?next=")
        assert client.app.state.audit.store.count(action=AuditAction.ACCESS_DENIED) == 1


class TestRoleRouting:
    def test_citizen_sent_to_profile(self, client, frontend) -> None:
        resp = client.get("/operator", headers=bearer(_token(client, "carl", Role.CITIZEN)))
        assert resp.status_code == 302
        assert resp.headers["location"] == f"{frontend}/profile"
        denials = client.app.state.audit.store.by_action(AuditAction.ACCESS_DENIED)
        assert [d.metadata["reason"] for d in denials] == ["insufficient_role"]

    def test_operator_allowed_on_operator_pages(self, client, frontend) -> None:
        resp = client.get("/operator/reports", headers=bearer(_token(client, "olga", Role.OPERATOR)))
        assert resp.headers["location"] == f"{frontend}/operator/reports"

    def test_operator_refused_on_admin_pages(self, client, frontend) -> None:
        resp = client.get("/admin", headers=bearer(_token(client, "olga", Role.OPERATOR)))
        assert resp.headers["location"] == f"{frontend}/profile"

    def test_administrator_allowed_everywhere(self, client, frontend) -> None:
        token = _token(client, "root", Role.ADMINISTRATOR)
        assert client.get("/admin", headers=bearer(token)).headers["location"] == f"{frontend}/admin"
        assert client.get("/operator", headers=bearer(token)).headers["location"] == f"{frontend}/operator"

    def test_login_cookie_is_accepted(self, client, frontend) -> None:
        make_account(client.app.state.accounts, "root", role=Role.ADMINISTRATOR)
        login = client.post("/api/auth/login", headers=basic_header("root", PASSWORD))
        assert login.status_code == 200
        resp = client.get("/admin/settings")
        assert resp.headers["location"] == f"{frontend}/admin/settings"


class TestSafePath:
    @pytest.mark.parametrize("path", ["/operator", "/admin/users"])
    def test_local_paths_kept(self, path: str) -> None:
        assert _safe_path(path) == path

    @pytest.mark.parametrize("path", ["//attacker.example", "https://attacker.example", ""])
    def test_foreign_targets_dropped(self, path: str) -> None:
        assert _safe_path(path) == "/"
