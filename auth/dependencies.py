"""
auth/dependencies.py -- The Authorization Gate as FastAPI Depends() helpers.

Two ways in:
  basic_account()   Authorization: Basic base64(identifier:secret). Used only
                    by the login route; delegates to the CredentialVerifier.
  bearer_account()  Authorization: Bearer <access token>. Every other
                    protected route.

The bearer gate is a fixed sequence; the first failing step decides the
response:

  1. header missing or not "Bearer <token>"  -> 401 TOKEN_MISSING
  2. signature or expiry check fails          -> 401 TOKEN_EXPIRED / TOKEN_INVALID
  3. account lookup (no secret fields)        -> 401 ACCOUNT_NOT_FOUND
  4. account blocked                          -> 403 ACCOUNT_BLOCKED (with date)
  5. token issued before last credential change -> 401 TOKEN_STALE
  6. success: request.state.account / request.state.claims are set

Every rejection writes one access_denied audit record and marks the error
audited. An unexpected exception inside the gate is logged and replaced by
InternalError so the request still gets a response.

require_roles(*roles) composes the bearer gate with role_allows().

evaluate_bearer() is the non-raising variant the UI route guard uses; it
also accepts the access_token cookie, which the JSON API does not.

Layer rule: no imports from api/ or web/. This module may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Iterable, Optional

from fastapi import Depends, Request

from audit.models import AuditAction, AuditEvent, AuditStatus
from audit.route import request_context
from auth.models import AccessClaims, Account, Role, role_allows
from auth.tokens import is_stale
from core.errors import (
    AccountBlocked,
    AccountNotFound,
    AppError,
    CredentialsMissing,
    InsufficientRole,
    InternalError,
    TokenMissing,
    TokenStale,
)

logger = logging.getLogger("civicauth.auth.gate")


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------


def _scheme_value(request: Request, scheme: str) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    prefix = f"{scheme} "
    if header[: len(prefix)].lower() != prefix.lower():
        return None
    value = header[len(prefix):].strip()
    return value or None


def parse_basic_credentials(request: Request) -> Optional[tuple[str, str]]:
    """Return (identifier, secret) from a Basic header, or None if malformed.

    The decoded value is split on the FIRST colon only, so secrets may
    contain colons.
    """
    value = _scheme_value(request, "Basic")
    if value is None:
        return None
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    identifier, sep, secret = decoded.partition(":")
    if not sep:
        return None
    return identifier, secret


# ---------------------------------------------------------------------------
# Audit of rejections
# ---------------------------------------------------------------------------


def _deny(request: Request, error: AppError, account_id: Optional[int] = None) -> AppError:
    """Record an access_denied event for error and mark it audited."""
    try:
        request.app.state.audit.dispatch(
            AuditEvent(
                action=AuditAction.ACCESS_DENIED,
                context=request_context(request),
                status=AuditStatus.FAILED,
                actor_id=account_id,
                metadata={"reason": error.code, "path": request.url.path, "method": request.method},
            )
        )
    except Exception:
        logger.exception("Could not record access denial on %s", request.url.path)
    return error.mark_audited()


# ---------------------------------------------------------------------------
# Bearer gate
# ---------------------------------------------------------------------------


def resolve_bearer(request: Request, token: Optional[str]) -> tuple[Account, AccessClaims]:
    """Run steps 1-5 of the gate for token. Raises the deciding AppError."""
    if not token:
        raise TokenMissing()
    claims = request.app.state.tokens.decode_access_token(token)
    account = request.app.state.accounts.get_by_id(claims.account_id)
    if account is None:
        raise AccountNotFound()
    if not account.is_active:
        raise AccountBlocked(account.blocked_at).concerning(account.id)
    if is_stale(claims, account):
        raise TokenStale().concerning(account.id)
    return account, claims


def _guarded(request: Request, token: Optional[str]) -> tuple[Account, AccessClaims]:
    try:
        return resolve_bearer(request, token)
    except AppError as exc:
        raise _deny(request, exc, account_id=exc.account_id)
    except Exception:
        logger.exception("Authorization gate failed on %s %s", request.method, request.url.path)
        raise _deny(request, InternalError())


def bearer_account(request: Request) -> Account:
    """Require a valid Bearer access token.

    Use as a FastAPI dependency:
        @router.get("/me")
        def me(account: Account = Depends(bearer_account)): ...
    """
    account, claims = _guarded(request, _scheme_value(request, "Bearer"))
    request.state.account = account
    request.state.claims = claims
    return account


def evaluate_bearer(request: Request) -> tuple[Optional[Account], Optional[AppError]]:
    """Non-raising gate for the UI guard: returns (account, None) or (None, error).

    Reads the access_token cookie first, then the Bearer header. Rejections
    are still audited.
    """
    token = request.cookies.get("access_token") or _scheme_value(request, "Bearer")
    try:
        account, claims = _guarded(request, token)
    except AppError as exc:
        return None, exc
    request.state.account = account
    request.state.claims = claims
    return account, None


def require_roles(*roles: Role):
    """Return a dependency that requires a Bearer token AND one of roles.

    Use as a FastAPI dependency:
        @router.get("/users")
        def users(account: Account = Depends(require_roles(Role.OPERATOR, Role.ADMINISTRATOR))): ...
    """
    allowed: Iterable[Role] = frozenset(roles)

    def _require(request: Request, account: Account = Depends(bearer_account)) -> Account:
        if not role_allows(account.role, allowed):
            raise _deny(request, InsufficientRole(), account_id=account.id)
        return account

    return _require


# ---------------------------------------------------------------------------
# Basic gate (login only)
# ---------------------------------------------------------------------------


def basic_account(request: Request) -> Account:
    """Require Basic credentials and verify them.

    Missing or malformed credentials are rejected here (audited as
    access_denied); everything else is the verifier's decision and audit.
    """
    credentials = parse_basic_credentials(request)
    if credentials is None:
        raise _deny(request, CredentialsMissing())
    identifier, secret = credentials
    account = request.app.state.verifier.authenticate(identifier, secret, request_context(request))
    request.state.account = account
    return account
