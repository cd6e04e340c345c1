"""
tests/helpers.py -- Plain helpers shared by the test modules.

  PASSWORD          a password that satisfies the registration rules
  RecordingNotifier collects notifications instead of delivering them
  make_account()    create an account directly in a store
  basic_header() / bearer(): Authorization header builders
"""

from __future__ import annotations

import base64
from typing import Optional

from auth.models import Account, AuthMethods, GoogleIdentity, Role
from auth.store import AccountStore
from auth.tokens import hash_password

PASSWORD = "Str0ng!pass"


class RecordingNotifier:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent = []
        # Set False to simulate a mailer outage.
        self.delivered = True

    def send(self, notification) -> bool:
        self.sent.append(notification)
        return self.delivered


def make_account(
    accounts: AccountStore,
    username: str = "alice",
    email: Optional[str] = None,
    password: Optional[str] = PASSWORD,
    role: Role = Role.CITIZEN,
    google_id: Optional[str] = None,
) -> Account:
    """Insert an account straight into the store and return it (without hash)."""
    email = email or f"{username}@example.com"
    google = GoogleIdentity(provider_id=google_id, provider_email=email) if google_id else None
    account_id = accounts.create_account(
        Account(
            username=username,
            email=email,
            role=role,
            password_hash=hash_password(password) if password is not None else None,
            auth_methods=AuthMethods(local=password is not None, google=google),
        )
    )
    return accounts.get_by_id(account_id)


def basic_header(identifier: str, secret: str) -> dict[str, str]:
    raw = base64.b64encode(f"{identifier}:{secret}".encode()).decode()
    return {"Authorization": f"Basic {raw}"}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
