"""
auth/accounts.py -- Account lifecycle operations.

AccountService owns the rules that span more than one store call:
registration, self-service credential changes, and the administrative
block/unblock and role changes. Route handlers call these; the CLI calls
them too.

Input rules (shared with the API models, which call the check_* helpers from
Pydantic validators):
  username  3-30 chars of letters, digits, "." and "_", no "__", "..", "._"
  email     plain address with a dotted domain, stored lowercase
  password  8+ chars, at least one uppercase letter and one of !@#$%^&*

Credential changes:
  The current password is re-verified first. A wrong one raises
  InvalidCredentials and nothing is mutated or revoked. Changing the password
  or the email stamps password_changed_at (which makes every older access
  token stale at the gate) and revokes every refresh token of the account.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from auth.models import Account, AuthMethods, Role
from auth.store import AccountStore
from auth.tokens import TokenIssuer, hash_password, verify_password
from core.database import utcnow
from core.errors import (
    AccountNotFound,
    ConflictError,
    InvalidCredentials,
    LocalAuthDisabled,
    NotFoundError,
    ValidationError,
)
from core.notifier import Notification

logger = logging.getLogger("civicauth.auth.accounts")

_USERNAME_RE = re.compile(r"^(?=[\w.]{3,30}$)(?!.*[_.]{2})[a-zA-Z0-9._]+$")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PASSWORD_RE = re.compile(r"^(?=.*[A-Z])(?=.*[!@#$%^&*])(?=.{8,})")
# bcrypt only sees the first 72 bytes of its input.
PASSWORD_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Input checks -- raise ValueError so Pydantic validators can call them as-is
# ---------------------------------------------------------------------------


def check_username(value: str) -> str:
    value = (value or "").strip()
    if not _USERNAME_RE.match(value):
        raise ValueError(
            "Username must be 3-30 characters of letters, digits, '.' or '_' "
            "without consecutive separators."
        )
    return value


def check_email(value: str) -> str:
    value = (value or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("Email address is not valid.")
    return value


def check_password(value: str) -> str:
    if not _PASSWORD_RE.match(value or ""):
        raise ValueError(
            "Password must be at least 8 characters and contain an uppercase letter "
            "and one of !@#$%^&*."
        )
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must not exceed {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded.")
    return value


def _checked(check, value: str, field_name: str) -> str:
    try:
        return check(value)
    except ValueError as exc:
        raise ValidationError(str(exc), field=field_name) from exc


@dataclass
class CredentialChange:
    account: Account
    changed: list[str] = field(default_factory=list)
    sessions_revoked: int = 0


@dataclass
class AdminChange:
    account: Account
    field: str
    old: object
    new: object


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AccountService:
    def __init__(self, accounts: AccountStore, tokens: TokenIssuer, notifier) -> None:
        self.accounts = accounts
        self.tokens = tokens
        self.notifier = notifier

    def _load(self, account_id: int, include_secret: bool = False) -> Account:
        account = self.accounts.get_by_id(account_id, include_secret=include_secret)
        if account is None:
            raise NotFoundError("Account not found.")
        return account

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        role: Role = Role.CITIZEN,
    ) -> Account:
        """Create a local account. Raises ValidationError or ConflictError."""
        username = _checked(check_username, username, "username")
        email = _checked(check_email, email, "email")
        password = _checked(check_password, password, "password")

        # Pre-checks give field-specific conflicts on the common path; the
        # store's UNIQUE constraints cover the race between check and insert.
        if self.accounts.get_by_username(username) is not None:
            raise ConflictError("username")
        if self.accounts.get_by_email(email) is not None:
            raise ConflictError("email")

        account_id = self.accounts.create_account(
            Account(
                username=username,
                email=email,
                role=role,
                password_hash=hash_password(password),
                auth_methods=AuthMethods(local=True),
                full_name=(full_name or "").strip() or None,
            )
        )
        logger.info("Registered account %s (%s)", account_id, username)
        account = self._load(account_id)
        self.notifier.send(
            Notification(
                recipient=account.email,
                subject="Welcome to the waste-reporting platform",
                template="welcome",
                context={"username": account.username},
            )
        )
        return account

    # ------------------------------------------------------------------
    # Self-service credentials
    # ------------------------------------------------------------------

    def update_credentials(
        self,
        account_id: int,
        current_password: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> CredentialChange:
        account = self.accounts.get_by_id(account_id, include_secret=True)
        if account is None:
            raise AccountNotFound()
        if username is None and email is None and new_password is None:
            raise ValidationError("Nothing to update.")
        if not account.auth_methods.local or account.password_hash is None:
            raise LocalAuthDisabled()
        if not verify_password(current_password or "", account.password_hash):
            raise InvalidCredentials("Current password is incorrect.", field="currentPassword")

        changes: dict = {}
        if username is not None:
            username = _checked(check_username, username, "username")
            if username != account.username:
                other = self.accounts.get_by_username(username)
                if other is not None and other.id != account.id:
                    raise ConflictError("username")
                changes["username"] = username
        if email is not None:
            email = _checked(check_email, email, "email")
            if email != account.email:
                other = self.accounts.get_by_email(email)
                if other is not None and other.id != account.id:
                    raise ConflictError("email")
                changes["email"] = email
        if new_password is not None:
            new_password = _checked(check_password, new_password, "newPassword")
            changes["password_hash"] = hash_password(new_password)

        if not changes:
            return CredentialChange(account=self._load(account.id))

        credential_change = "password_hash" in changes or "email" in changes
        if credential_change:
            changes["password_changed_at"] = utcnow()
        self.accounts.update_credentials(account.id, **changes)

        revoked = self.tokens.revoke_all(account.id) if credential_change else 0
        changed = ["password" if name == "password_hash" else name for name in changes if name != "password_changed_at"]
        updated = self._load(account.id)
        logger.info("Credentials updated for account %s: %s", account.id, ", ".join(changed))

        self.notifier.send(
            Notification(
                recipient=updated.email,
                subject="Your sign-in details were changed",
                template="credentials_changed",
                context={"changed": changed, "previousEmail": account.email},
            )
        )
        return CredentialChange(account=updated, changed=changed, sessions_revoked=revoked)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_active(self, target_id: int, active: bool, initiator: Account) -> AdminChange:
        """Block or unblock an account. Blocking revokes all its sessions."""
        target = self._load(target_id)
        if not active and target.id == initiator.id:
            raise ValidationError("You cannot block your own account.", field="isActive")
        if (
            not active
            and target.is_active
            and target.role is Role.ADMINISTRATOR
            and self.accounts.count_active_admins() <= 1
        ):
            raise ValidationError("Cannot block the last active administrator.", field="isActive")

        self.accounts.set_active(target.id, active)
        if not active:
            self.tokens.revoke_all(target.id)
        logger.info(
            "Account %s %s by %s", target.id, "unblocked" if active else "blocked", initiator.id
        )
        return AdminChange(account=self._load(target.id), field="isActive", old=target.is_active, new=active)

    def set_role(self, target_id: int, role: Role, initiator: Account) -> AdminChange:
        target = self._load(target_id)
        role = Role(role)
        if (
            target.role is Role.ADMINISTRATOR
            and role is not Role.ADMINISTRATOR
            and target.is_active
            and self.accounts.count_active_admins() <= 1
        ):
            raise ValidationError("Cannot demote the last active administrator.", field="role")
        self.accounts.set_role(target.id, role)
        logger.info("Account %s role %s -> %s by %s", target.id, target.role.value, role.value, initiator.id)
        return AdminChange(account=self._load(target.id), field="role", old=target.role.value, new=role.value)
