"""
auth/password_reset.py -- Forgotten-password recovery by emailed token.

Flow:
  1. request_reset(email): for a local, active account, mint a random token,
     store only its SHA-256 hash with an expiry, and send the raw token to
     the account's address through the notifier as a frontend link.
  2. reset_password(token, password): redeem the token once, set the new
     password, stamp password_changed_at (every older access token is then
     stale at the gate) and revoke every refresh token of the account.

The request step answers the same way whether or not the address belongs to
an account, so it cannot be used to discover registered emails. Issuing a new
token retires any outstanding one for the account.

Redemption is one conditional UPDATE (unused and unexpired), so a token that
two requests present at once is honoured for only one of them.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, or_, select
from sqlalchemy.engine import Engine

from auth.accounts import CredentialChange, _checked, check_email, check_password
from auth.models import Account, PasswordResetRecord
from auth.store import AccountStore
from auth.tokens import TokenIssuer, hash_password, hash_reset_token, new_reset_token
from core.database import create_store_engine, from_iso, to_iso, utcnow
from core.errors import DeliveryFailed, ResetTokenInvalid, ValidationError
from core.notifier import Notification

logger = logging.getLogger("civicauth.auth.password_reset")

_metadata = MetaData()

_password_resets = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(40), nullable=False),
    Column("used_at", String(40), nullable=True),
    Column("created_at", String(40), nullable=False),
    Index("ix_password_reset_tokens_account", "account_id"),
)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PasswordResetStore:
    """Repository for PasswordResetRecord entities.

    Usage:
        store = PasswordResetStore("sqlite:///civicauth.db")
        store.add(PasswordResetRecord(account_id=1, token_hash=h, expires_at=exp))
        account_id = store.consume(h)  # None unless h was unused and unexpired
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    def add(self, record: PasswordResetRecord) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.insert().values(
                    account_id=record.account_id,
                    token_hash=record.token_hash,
                    expires_at=to_iso(record.expires_at),
                    used_at=to_iso(record.used_at) if record.used_at else None,
                    created_at=to_iso(record.created_at or utcnow()),
                )
            )
        return result.inserted_primary_key[0]

    def get_by_hash(self, token_hash: str) -> Optional[PasswordResetRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_resets.select().where(_password_resets.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def consume(self, token_hash: str, now: Optional[datetime] = None) -> Optional[int]:
        """Mark the grant used if it is still redeemable. Returns its account id or None."""
        now_iso = to_iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.used_at.is_(None))
                    & (_password_resets.c.expires_at > now_iso)
                )
                .values(used_at=now_iso)
            )
            if result.rowcount != 1:
                return None
            return conn.execute(
                select(_password_resets.c.account_id).where(_password_resets.c.token_hash == token_hash)
            ).scalar_one()

    def retire_all(self, account_id: int, now: Optional[datetime] = None) -> int:
        """Mark every unused grant of an account used. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where((_password_resets.c.account_id == account_id) & (_password_resets.c.used_at.is_(None)))
                .values(used_at=to_iso(now or utcnow()))
            )
        return result.rowcount

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete used and expired grants. Housekeeping only."""
        now_iso = to_iso(now or utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.delete().where(
                    or_(_password_resets.c.used_at.is_not(None), _password_resets.c.expires_at <= now_iso)
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> PasswordResetRecord:
    return PasswordResetRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at) if row.used_at else None,
        created_at=from_iso(row.created_at),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PasswordResetService:
    def __init__(
        self,
        accounts: AccountStore,
        resets: PasswordResetStore,
        tokens: TokenIssuer,
        notifier,
    ) -> None:
        self.accounts = accounts
        self.resets = resets
        self.tokens = tokens
        self.notifier = notifier

    @property
    def settings(self):
        return self.tokens.settings

    def request_reset(self, email: str) -> Optional[Account]:
        """Send a reset link to email if it names a resettable account.

        Returns the account the link went to, or None. Only a failed delivery
        is reported to the caller (DeliveryFailed); the grant is retired then.
        """
        email = _checked(check_email, email, "email")
        account = self.accounts.get_by_email(email)
        if account is None or not account.is_active or not account.auth_methods.local:
            logger.info("Password reset requested for an address with no resettable account")
            return None

        raw = new_reset_token()
        now = utcnow()
        self.resets.retire_all(account.id, now=now)
        self.resets.add(
            PasswordResetRecord(
                account_id=account.id,
                token_hash=hash_reset_token(raw),
                expires_at=now + timedelta(seconds=self.settings.password_reset_ttl_seconds),
                created_at=now,
            )
        )
        link = f"{self.settings.frontend_url.rstrip('/')}/reset-password?{urlencode({'token': raw})}"
        delivered = self.notifier.send(
            Notification(
                recipient=account.email,
                subject="Reset your password",
                template="password_reset",
                context={
                    "username": account.username,
                    "resetUrl": link,
                    "expiresInMinutes": self.settings.password_reset_ttl_seconds // 60,
                },
            )
        )
        if not delivered:
            self.resets.retire_all(account.id)
            logger.warning("Password reset link for account %s could not be delivered", account.id)
            raise DeliveryFailed("The reset link could not be sent. Try again later.")
        logger.info("Password reset link sent for account %s", account.id)
        return account

    def reset_password(self, token: str, new_password: str) -> CredentialChange:
        """Redeem token and set new_password. Raises ResetTokenInvalid or ValidationError.

        The password is checked before the token is spent, so a rejected
        password leaves the link usable.
        """
        if not token:
            raise ValidationError("Reset token is required.", field="token")
        new_password = _checked(check_password, new_password, "password")

        account_id = self.resets.consume(hash_reset_token(token))
        if account_id is None:
            raise ResetTokenInvalid(field="token")
        account = self.accounts.get_by_id(account_id)
        if account is None or not account.is_active:
            raise ResetTokenInvalid(field="token").concerning(account_id)

        self.accounts.update_credentials(
            account.id, password_hash=hash_password(new_password), password_changed_at=utcnow()
        )
        self.resets.retire_all(account.id)
        revoked = self.tokens.revoke_all(account.id)
        updated = self.accounts.get_by_id(account.id)
        logger.info("Password reset completed for account %s", account.id)

        self.notifier.send(
            Notification(
                recipient=updated.email,
                subject="Your sign-in details were changed",
                template="credentials_changed",
                context={"changed": ["password"], "resetViaEmail": True},
            )
        )
        return CredentialChange(account=updated, changed=["password"], sessions_revoked=revoked)
