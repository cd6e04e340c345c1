"""
auth/tokens.py -- Password hashing, JWT issuance, and refresh-token rotation.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       distinct secrets (Settings refuses equal ones [M8]) and carry a "type"
       claim, so neither kind is accepted where the other is expected.

       Access token:  sub, account_id, role, iat, exp, sid, type=access
       Refresh token: sub, iat, exp, jti, type=refresh

       sid is the id of the refresh record minted alongside the access token.
       Logout uses it to revoke exactly the session the caller is using.

  Passwords: bcrypt directly (cost 12). The _DUMMY_HASH constant enables
       timing equalization in the credential verifier so response time does
       not reveal whether an identifier exists [C1].

  Refresh tokens at rest: HMAC-SHA256(JWT_REFRESH_SECRET, raw_token). A signed
       JWT already has ample entropy, so bcrypt's slowness buys nothing; the
       keyed hash is deterministic, which gives O(1) lookup, a UNIQUE index,
       and lets rotation be one conditional UPDATE (see auth/token_store.py).

  Rotation: refresh() never mints anything until the store has atomically
       retired the presented token. A token is redeemable at most once.

Layer rule: no imports from api/ or web/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from audit.models import RequestContext
from auth.models import AccessClaims, Account, RefreshTokenRecord, Role, TokenPair
from core.config import Settings
from core.database import utcnow
from core.errors import AccountBlocked, TokenExpired, TokenInvalid

if TYPE_CHECKING:
    from auth.store import AccountStore
    from auth.token_store import RefreshTokenStore

logger = logging.getLogger("civicauth.auth.tokens")

_ALGORITHM = "HS256"

BCRYPT_ROUNDS = 12

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. check_password refuses longer
    UTF-8 input, so accepted passwords are never truncated.
    """
    salt = bcrypt.gensalt(rounds=rounds or BCRYPT_ROUNDS)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash or over-long input.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. The verifier always runs verify_password(),
# against this hash when there is no real one to compare.
_DUMMY_HASH: str = hash_password("civicauth_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Burn one bcrypt comparison's worth of time. Result is discarded."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Refresh and reset token hashing
# ---------------------------------------------------------------------------


def hash_refresh_token(raw_token: str, secret: str) -> str:
    """Return HMAC-SHA256(secret, raw_token) as a hex string."""
    return hmac.new(secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def new_reset_token() -> str:
    return secrets.token_urlsafe(32)


def hash_reset_token(raw_token: str) -> str:
    """Return SHA-256(raw_token) as hex. Reset tokens are 256 random bits, so no key is needed."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints, rotates, decodes and revokes tokens.

    Usage:
        issuer = TokenIssuer(settings, account_store, refresh_store)
        pair = issuer.issue(account, context)
        account, pair = issuer.refresh(pair.refresh_token, context)
        claims = issuer.decode_access_token(pair.access_token)
    """

    def __init__(self, settings: Settings, accounts: AccountStore, token_store: RefreshTokenStore) -> None:
        self.settings = settings
        self.accounts = accounts
        self.token_store = token_store

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def create_access_token(
        self,
        account: Account,
        issued_at: Optional[datetime] = None,
        session_id: Optional[int] = None,
    ) -> str:
        """Encode a signed access token for account.

        issued_at defaults to now. Passing an explicit value is how tests
        produce tokens that predate a credential change.
        """
        iat = issued_at or utcnow()
        payload = {
            "sub": str(account.id),
            "account_id": account.id,
            "role": Role(account.role).value,
            "iat": _epoch(iat),
            "exp": _epoch(iat + timedelta(seconds=self.settings.access_token_ttl_seconds)),
            "type": "access",
        }
        if session_id is not None:
            payload["sid"] = session_id
        return jwt.encode(payload, self.settings.jwt_access_secret, algorithm=_ALGORITHM)

    def _new_refresh(self, account: Account, context: RequestContext, now: datetime) -> tuple[str, RefreshTokenRecord]:
        expires_at = now + timedelta(seconds=self.settings.refresh_token_ttl_seconds)
        raw = jwt.encode(
            {
                "sub": str(account.id),
                "iat": _epoch(now),
                "exp": _epoch(expires_at),
                # jti makes every raw token (and so every stored hash) unique,
                # even for two tokens minted in the same second.
                "jti": secrets.token_hex(16),
                "type": "refresh",
            },
            self.settings.jwt_refresh_secret,
            algorithm=_ALGORITHM,
        )
        record = RefreshTokenRecord(
            account_id=account.id,
            token_hash=hash_refresh_token(raw, self.settings.jwt_refresh_secret),
            expires_at=expires_at,
            issuing_ip=context.ip,
            issuing_user_agent=context.device,
            created_at=now,
        )
        return raw, record

    def _pair(self, account: Account, raw_refresh: str, session_id: int, now: datetime) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(account, issued_at=now, session_id=session_id),
            refresh_token=raw_refresh,
            expires_in=self.settings.access_token_ttl_seconds,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def issue(self, account: Account, context: RequestContext) -> TokenPair:
        """Mint a fresh access/refresh pair and persist the refresh record."""
        now = utcnow()
        raw, record = self._new_refresh(account, context, now)
        session_id = self.token_store.add(record)
        logger.info("Issued session %s for account %s from %s", session_id, account.id, context.ip)
        return self._pair(account, raw, session_id, now)

    def refresh(self, raw_refresh: str, context: RequestContext) -> tuple[Account, TokenPair]:
        """Exchange a refresh token for a new pair, retiring the old token.

        Raises TokenExpired, TokenInvalid (bad signature, unknown, revoked,
        already redeemed, owner gone) or AccountBlocked. Nothing is minted
        on any failure.
        """
        account_id = self._decode_refresh(raw_refresh)
        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise TokenInvalid()
        if not account.is_active:
            raise AccountBlocked(account.blocked_at)

        now = utcnow()
        new_raw, replacement = self._new_refresh(account, context, now)
        old_hash = hash_refresh_token(raw_refresh, self.settings.jwt_refresh_secret)
        session_id = self.token_store.rotate(old_hash, account.id, replacement, now=now)
        if session_id is None:
            logger.warning("Rejected refresh for account %s from %s: token not live", account.id, context.ip)
            raise TokenInvalid()
        return account, self._pair(account, new_raw, session_id, now)

    def decode_access_token(self, token: str) -> AccessClaims:
        """Verify an access token. Raises TokenExpired or TokenInvalid."""
        try:
            payload = jwt.decode(token, self.settings.jwt_access_secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("type") != "access":
            raise TokenInvalid()
        try:
            return AccessClaims(
                account_id=int(payload["account_id"]),
                role=Role(payload["role"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                session_id=int(payload["sid"]) if payload.get("sid") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    def _decode_refresh(self, raw_refresh: str) -> int:
        try:
            payload = jwt.decode(raw_refresh, self.settings.jwt_refresh_secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("type") != "refresh":
            raise TokenInvalid()
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    def revoke_session(self, account_id: int, session_id: Optional[int]) -> bool:
        """Revoke the refresh token backing one session. False if already gone."""
        if session_id is None:
            return False
        return self.token_store.revoke(session_id, account_id)

    def revoke_all(self, account_id: int) -> int:
        count = self.token_store.revoke_all(account_id)
        logger.info("Revoked %d refresh token(s) for account %s", count, account_id)
        return count


def is_stale(claims: AccessClaims, account: Account) -> bool:
    """True if the token was issued before the account's last credential change.

    Compared at whole-second precision, which is what iat carries.
    """
    if account.password_changed_at is None:
        return False
    return _epoch(claims.issued_at) < _epoch(account.password_changed_at)


def public_account(account: Account) -> Account:
    """Copy of account with the secret field cleared."""
    return replace(account, password_hash=None)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, settings: Settings) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: matches the access token lifetime so both expire together.
    """
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.access_token_ttl_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie("access_token")
