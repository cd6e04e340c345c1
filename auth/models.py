"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores and
services do the work; these types only own the shape.

Role is a closed enum and role_allows() is the one capability check in the
codebase. Route guards never compare role strings themselves.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional


class Role(str, Enum):
    CITIZEN = "citizen"
    OPERATOR = "operator"
    ADMINISTRATOR = "administrator"


def role_allows(role: Role | str, allowed: Iterable[Role]) -> bool:
    """Return True if role is one of the allowed roles.

    Raises ValueError for strings outside the Role enum, so a misspelled role
    in stored data fails loudly instead of silently denying (or granting).
    """
    return Role(role) in frozenset(allowed)


@dataclass
class GoogleIdentity:
    provider_id: str
    provider_email: str
    enabled: bool = True


@dataclass
class AuthMethods:
    local: bool = True
    google: Optional[GoogleIdentity] = None


@dataclass
class Account:
    """An identity in civicauth.

    password_hash is present exactly when auth_methods.local is True.
    Accounts created through Google sign-in have no local secret at all, so
    there is nothing a password login could ever match. The hash is also
    None on accounts loaded without secrets (the authorization gate never
    asks for it).
    """

    username: str
    email: str
    role: Role = Role.CITIZEN
    id: Optional[int] = None
    password_hash: Optional[str] = None
    auth_methods: AuthMethods = field(default_factory=AuthMethods)
    full_name: Optional[str] = None
    is_active: bool = True
    blocked_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    """One link of a refresh-token lineage.

    token_hash is HMAC-SHA256(JWT_REFRESH_SECRET, raw_token). The raw token is
    returned to the client once and never persisted; a copy of this table is
    useless without the server secret.
    """

    account_id: int
    token_hash: str
    expires_at: datetime
    issuing_ip: str = "unknown"
    issuing_user_agent: str = "unknown"
    id: Optional[int] = None
    revoked: bool = False
    created_at: Optional[datetime] = None


@dataclass
class PasswordResetRecord:
    """A single-use password reset grant.

    token_hash is SHA-256(raw_token); the raw token only ever travels inside
    the reset notification.
    """

    account_id: int
    token_hash: str
    expires_at: datetime
    id: Optional[int] = None
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    session_id: int  # id of the RefreshTokenRecord backing this pair


@dataclass(frozen=True)
class AccessClaims:
    account_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[int] = None
