"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. Route and service code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The password hash is a hidden column: every read leaves it out unless the
  caller passes include_secret=True. Only the credential verifier and the
  credential-update service ask for it.

  Duplicate username/email/Google id surface as sqlalchemy IntegrityError
  from the UNIQUE constraints. They are translated into field-specific
  ConflictError here, so no storage error ever reaches a client.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Account, AuthMethods, GoogleIdentity, Role
from core.database import create_store_engine, from_iso, to_iso, utcnow
from core.errors import ConflictError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lowercase
    Column("password_hash", Text),  # NULL when local auth is disabled
    Column("role", String(20), nullable=False, server_default=Role.CITIZEN.value),
    Column("local_auth", Integer, nullable=False, server_default="1"),
    Column("google_id", String(255), unique=True),
    Column("google_email", String(255)),
    Column("google_enabled", Integer, nullable=False, server_default="0"),
    Column("full_name", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("blocked_at", String(40)),
    Column("password_changed_at", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_PUBLIC_COLUMNS = [c for c in _accounts.c if c.name != "password_hash"]


def _conflict_from(exc: IntegrityError) -> ConflictError:
    """Map a UNIQUE violation to the field it concerns.

    SQLite reports "UNIQUE constraint failed: accounts.email"; PostgreSQL
    names the constraint (accounts_email_key). Both mention the column.
    """
    message = str(exc.orig).lower()
    for column, label in (("email", "email"), ("username", "username"), ("google_id", "google account")):
        if column in message:
            return ConflictError(label)
    return ConflictError("account", "An account with those details already exists.")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore("sqlite:///civicauth.db")
        account_id = store.create_account(Account(username="alice", email="alice@x.com",
                                                  password_hash=hash_password("Secr3t!@")))
        account = store.get_by_identifier("alice", include_secret=True)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its id.

        Raises ValueError if the password-hash invariant is violated and
        ConflictError if the username, email or Google id is taken.
        """
        if account.auth_methods.local != (account.password_hash is not None):
            raise ValueError("password_hash must be set exactly when local authentication is enabled")
        google = account.auth_methods.google
        now = to_iso(utcnow())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        username=account.username,
                        email=account.email.strip().lower(),
                        password_hash=account.password_hash,
                        role=Role(account.role).value,
                        local_auth=1 if account.auth_methods.local else 0,
                        google_id=google.provider_id if google else None,
                        google_email=google.provider_email if google else None,
                        google_enabled=1 if google and google.enabled else 0,
                        full_name=account.full_name,
                        is_active=1 if account.is_active else 0,
                        blocked_at=to_iso(account.blocked_at),
                        password_changed_at=to_iso(account.password_changed_at),
                        created_at=now,
                        updated_at=now,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise _conflict_from(exc) from exc

    def link_google(self, account_id: int, identity: GoogleIdentity) -> bool:
        """Attach a Google identity to an account that has none yet.

        Idempotent: the WHERE clause only matches unlinked rows, so a second
        call (or a concurrent callback) changes nothing and returns False.
        Other authentication methods are left untouched.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.update()
                    .where((_accounts.c.id == account_id) & (_accounts.c.google_id.is_(None)))
                    .values(
                        google_id=identity.provider_id,
                        google_email=identity.provider_email,
                        google_enabled=1 if identity.enabled else 0,
                        updated_at=to_iso(utcnow()),
                    )
                )
        except IntegrityError as exc:
            raise _conflict_from(exc) from exc
        return result.rowcount > 0

    def update_credentials(
        self,
        account_id: int,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> bool:
        """Update login identifiers and/or the password hash.

        Setting a password hash also turns local authentication on.
        """
        values: dict = {"updated_at": to_iso(utcnow())}
        if username is not None:
            values["username"] = username
        if email is not None:
            values["email"] = email.strip().lower()
        if password_hash is not None:
            values["password_hash"] = password_hash
            values["local_auth"] = 1
        if password_changed_at is not None:
            values["password_changed_at"] = to_iso(password_changed_at)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        except IntegrityError as exc:
            raise _conflict_from(exc) from exc
        return result.rowcount > 0

    def set_active(self, account_id: int, active: bool, at: Optional[datetime] = None) -> bool:
        """Block (active=False, stamps blocked_at) or unblock (clears it) an account."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    is_active=1 if active else 0,
                    blocked_at=None if active else to_iso(at or utcnow()),
                    updated_at=to_iso(utcnow()),
                )
            )
        return result.rowcount > 0

    def set_role(self, account_id: int, role: Role) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(role=Role(role).value, updated_at=to_iso(utcnow()))
            )
        return result.rowcount > 0

    def update_last_login(self, account_id: int, at: Optional[datetime] = None) -> None:
        """Stamp last_login after a successful password or Google sign-in."""
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(last_login=to_iso(at or utcnow()))
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _select(self, include_secret: bool):
        return _accounts.select() if include_secret else select(*_PUBLIC_COLUMNS)

    def _one(self, where, include_secret: bool = False) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(self._select(include_secret).where(where)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int, include_secret: bool = False) -> Optional[Account]:
        return self._one(_accounts.c.id == account_id, include_secret)

    def get_by_identifier(self, identifier: str, include_secret: bool = False) -> Optional[Account]:
        """Look up by email (case-insensitive) OR username (exact)."""
        identifier = (identifier or "").strip()
        return self._one(
            or_(_accounts.c.email == identifier.lower(), _accounts.c.username == identifier),
            include_secret,
        )

    def get_by_email(self, email: str) -> Optional[Account]:
        return self._one(_accounts.c.email == email.strip().lower())

    def get_by_username(self, username: str) -> Optional[Account]:
        return self._one(_accounts.c.username == username)

    def get_by_google_id(self, provider_id: str) -> Optional[Account]:
        return self._one(_accounts.c.google_id == provider_id)

    def list_accounts(self, role: Optional[Role] = None) -> list[Account]:
        """Return accounts ordered by username, optionally filtered by role."""
        query = self._select(False).order_by(_accounts.c.username)
        if role is not None:
            query = query.where(_accounts.c.role == Role(role).value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            return (conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0) > 0

    def count_active_admins(self) -> int:
        """Used to refuse blocking or demoting the last active administrator."""
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_accounts)
                    .where((_accounts.c.role == Role.ADMINISTRATOR.value) & (_accounts.c.is_active == 1))
                ).scalar()
                or 0
            )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    mapping = row._mapping
    google = None
    if mapping["google_id"]:
        google = GoogleIdentity(
            provider_id=mapping["google_id"],
            provider_email=mapping["google_email"] or "",
            enabled=bool(mapping["google_enabled"]),
        )
    return Account(
        id=mapping["id"],
        username=mapping["username"],
        email=mapping["email"],
        role=Role(mapping["role"]),
        # Absent from the row when the query excluded secrets.
        password_hash=mapping.get("password_hash"),
        auth_methods=AuthMethods(local=bool(mapping["local_auth"]), google=google),
        full_name=mapping["full_name"],
        is_active=bool(mapping["is_active"]),
        blocked_at=from_iso(mapping["blocked_at"]),
        password_changed_at=from_iso(mapping["password_changed_at"]),
        last_login=from_iso(mapping["last_login"]),
        created_at=from_iso(mapping["created_at"]),
    )
