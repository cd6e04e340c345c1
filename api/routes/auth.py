"""
api/routes/auth.py -- Authentication, session and account management endpoints.

Routes:
  POST  /api/auth/register                 -- create a local citizen account
  POST  /api/auth/login                    -- Basic credentials -> token pair
  POST  /api/auth/refresh-token            -- rotate a refresh token
  POST  /api/auth/logout                   -- revoke this session (or all)
  PATCH /api/auth/profile/credentials      -- change username/email/password
  GET   /api/auth/me                       -- current account
  GET   /api/auth/googleOAuth              -- redirect to Google
  GET   /api/auth/googleOAuth/callback     -- Google redirect target
  GET   /api/auth/users                    -- list accounts (operator, administrator)
  PATCH /api/auth/users/{account_id}       -- role / isActive (administrator)

Security:
  [H2] login, register and refresh-token are rate-limited per IP; the limits
       come from Settings.
  [C1] Password checks go through the CredentialVerifier (timing
       equalization). Never inline a store lookup + verify_password().
  [M4] PATCH /users/{id} blocks self-blocking and removing the last active
       administrator (enforced in AccountService).
  [M5] Cache-Control: no-store on every response that carries tokens.

Auditing: the router uses AuditedRoute. Routes that declare an action with
audit_action() get exactly one record per request (one per action for
multi-change admin requests). Login is audited by the verifier itself and
declares nothing here.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_limit, password_reset_limit, refresh_limit, register_limit
from api.models import (
    AccountPatch,
    AccountResponse,
    CredentialsUpdateRequest,
    CredentialsUpdateResponse,
    ForgotPasswordRequest,
    LogoutRequest,
    LogoutResponse,
    MessageResponse,
    PasswordResetResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
)
from audit.models import AuditAction, LoginMethod
from audit.route import AuditedRoute, audit_action, request_context, scope_for
from auth.accounts import AccountService
from auth.dependencies import basic_account, bearer_account, require_roles
from auth.models import Account, Role, TokenPair
from auth.oauth import OAuthBridge, OAuthProfileError, extract_google_profile
from auth.password_reset import PasswordResetService
from auth.tokens import TokenIssuer, clear_auth_cookie, set_auth_cookie
from core.errors import AccountBlocked, ConflictError, ValidationError

logger = logging.getLogger("civicauth.api.auth")

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/refresh-token:  public (rate-limited)
# - POST  /auth/forgot-password, /auth/reset-password:      public (rate-limited)
# - GET   /auth/googleOAuth, /auth/googleOAuth/callback:    public
# - POST  /auth/logout, PATCH /auth/profile/credentials,
#   GET   /auth/me:                                          bearer_account
# - GET   /auth/users:                                       operator, administrator
# - PATCH /auth/users/{id}:                                  administrator
router = APIRouter(route_class=AuditedRoute)


def _token_response(request: Request, pair: TokenPair, role: Role) -> JSONResponse:
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            role=role,
        ).model_dump(mode="json", by_alias=True),
    )
    set_auth_cookie(resp, pair.access_token, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(register_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/auth/register",
    response_model=AccountResponse,
    status_code=201,
    dependencies=[Depends(audit_action(AuditAction.USER_REGISTRATION))],
)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create a local citizen account.

    409 with field=username or field=email on a duplicate. Registration does
    not log the account in; the client follows up with POST /auth/login.
    """
    service: AccountService = request.app.state.account_service
    account = service.register(body.username, body.email, body.password, full_name=body.full_name)
    scope = scope_for(request)
    scope.actor_id = account.id
    scope.email = account.email
    return AccountResponse.from_account(account)


@limiter.limit(login_limit)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, account: Account = Depends(basic_account)) -> JSONResponse:
    """Exchange Basic credentials for an access/refresh pair.

    basic_account runs the CredentialVerifier, which returns the same 401 for
    an unknown identifier and a wrong password [C1] and a 403 with the block
    date for a blocked account.
    """
    tokens: TokenIssuer = request.app.state.tokens
    pair = tokens.issue(account, request_context(request))
    return _token_response(request, pair, account.role)


@limiter.limit(refresh_limit)  # [H2]
@router.post(
    "/auth/refresh-token",
    response_model=TokenResponse,
    dependencies=[Depends(audit_action(AuditAction.TOKEN_REFRESH))],
)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Rotate a refresh token. The presented token is spent either way it goes."""
    raw = body.refresh_token if body is not None else None
    if not raw:
        raise ValidationError("Refresh token is required.", field="refreshToken")
    tokens: TokenIssuer = request.app.state.tokens
    account, pair = tokens.refresh(raw, request_context(request))
    scope_for(request).actor_id = account.id
    return _token_response(request, pair, account.role)


@limiter.limit(password_reset_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Email a single-use reset link.

    The answer is the same whether or not the address has an account; only a
    failed delivery to a real account surfaces (503).
    """
    service: PasswordResetService = request.app.state.password_reset
    service.request_reset(body.email)
    return MessageResponse(message="If an account uses that address, a reset link has been sent.")


@limiter.limit(password_reset_limit)  # [H2]
@router.post(
    "/auth/reset-password",
    response_model=PasswordResetResponse,
    dependencies=[Depends(audit_action(AuditAction.PASSWORD_CHANGE))],
)
def reset_password(request: Request, body: ResetPasswordRequest) -> PasswordResetResponse:
    """Set a new password with a reset token. Every session of the account is revoked."""
    service: PasswordResetService = request.app.state.password_reset
    scope = scope_for(request)
    scope.method = LoginMethod.EMAIL
    scope.metadata["resetViaEmail"] = True
    change = service.reset_password(body.token, body.password)
    scope.actor_id = change.account.id
    scope.email = change.account.email
    scope.metadata["sessionsRevoked"] = change.sessions_revoked
    return PasswordResetResponse(message="Password updated. Sign in again.", sessions_revoked=change.sessions_revoked)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/auth/logout",
    response_model=LogoutResponse,
    dependencies=[Depends(audit_action(AuditAction.LOGOUT))],
)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    account: Account = Depends(bearer_account),
) -> JSONResponse:
    """Revoke the session behind the presented access token.

    With {"allDevices": true} every refresh token of the account is revoked.
    The access token itself stays valid until it expires.
    """
    tokens: TokenIssuer = request.app.state.tokens
    if body is not None and body.all_devices:
        scope_for(request).action = AuditAction.LOGOUT_ALL
        revoked = tokens.revoke_all(account.id)
    else:
        revoked = 1 if tokens.revoke_session(account.id, request.state.claims.session_id) else 0
    resp = JSONResponse(
        content=LogoutResponse(message="Logged out.", sessions_revoked=revoked).model_dump(by_alias=True)
    )
    clear_auth_cookie(resp)
    return resp


@router.patch(
    "/auth/profile/credentials",
    response_model=CredentialsUpdateResponse,
    dependencies=[Depends(audit_action(AuditAction.CREDENTIALS_UPDATE))],
)
def update_credentials(
    request: Request,
    body: CredentialsUpdateRequest,
    account: Account = Depends(bearer_account),
) -> CredentialsUpdateResponse:
    """Change username, email and/or password. currentPassword is mandatory.

    A password or email change revokes every session; the client must log in
    again to get a refresh token.
    """
    service: AccountService = request.app.state.account_service
    change = service.update_credentials(
        account.id,
        body.current_password,
        username=body.username,
        email=body.email,
        new_password=body.new_password,
    )
    scope = scope_for(request)
    scope.metadata["changed"] = change.changed
    scope.metadata["sessionsRevoked"] = change.sessions_revoked
    if "password" in change.changed:
        scope.extra_actions.append(AuditAction.PASSWORD_CHANGE)
    return CredentialsUpdateResponse(
        account=AccountResponse.from_account(change.account),
        changed=change.changed,
        sessions_revoked=change.sessions_revoked,
    )


@router.get("/auth/me", response_model=AccountResponse)
def me(account: Account = Depends(bearer_account)) -> AccountResponse:
    """Return the account behind the presented access token."""
    return AccountResponse.from_account(account)


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------


def _oauth_failed(request: Request) -> RedirectResponse:
    frontend = request.app.state.settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{frontend}/auth?error=oauth_failed", status_code=302)


@router.get("/auth/googleOAuth")
async def google_oauth(request: Request):
    """Redirect the browser to Google's authorization page."""
    settings = request.app.state.settings
    client = request.app.state.oauth.create_client("google")
    if client is None:
        request.app.state.oauth_bridge.record_failure("provider_disabled", request_context(request))
        return _oauth_failed(request)
    redirect_uri = f"{settings.backend_url.rstrip('/')}/api/auth/googleOAuth/callback"
    try:
        return await client.authorize_redirect(request, redirect_uri)
    except (httpx.HTTPError, OSError) as exc:
        logger.exception("Google discovery document could not be fetched")
        request.app.state.oauth_bridge.record_failure(
            "provider_unreachable", request_context(request), detail=type(exc).__name__
        )
        return _oauth_failed(request)


@router.get("/auth/googleOAuth/callback", name="google_oauth_callback")
async def google_oauth_callback(request: Request) -> RedirectResponse:
    """Finish Google sign-in and hand the tokens to the frontend.

    Flow:
      1. Exchange the authorization code (authlib verifies state via session).
      2. Extract the verified profile [H1]. Nothing is written before this.
      3. OAuthBridge finds, links or creates the account and issues tokens.
      4. Redirect to {frontend}/auth?token=...&refreshToken=...&role=...

    Every failure redirects to {frontend}/auth?error=oauth_failed and is
    audited as oauth_failure (a blocked account is audited by the bridge as
    a failed login instead).
    """
    context = request_context(request)
    bridge: OAuthBridge = request.app.state.oauth_bridge
    client = request.app.state.oauth.create_client("google")
    if client is None:
        bridge.record_failure("provider_disabled", context)
        return _oauth_failed(request)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.warning("Google token exchange failed: %s", exc)
        bridge.record_failure("token_exchange", context, detail=str(exc))
        return _oauth_failed(request)
    except (httpx.HTTPError, OSError) as exc:
        # Provider unreachable or discovery document fetch failed.
        logger.exception("Google token exchange could not reach the provider")
        bridge.record_failure("token_exchange", context, detail=type(exc).__name__)
        return _oauth_failed(request)

    try:
        profile = extract_google_profile(token)
    except OAuthProfileError as exc:
        logger.warning("Google sign-in rejected: %s", exc)
        bridge.record_failure("profile_rejected", context, detail=str(exc))
        return _oauth_failed(request)

    try:
        result = await run_in_threadpool(bridge.exchange, profile, context)
    except AccountBlocked:
        return _oauth_failed(request)
    except (OAuthProfileError, ConflictError) as exc:
        logger.warning("Google sign-in could not be mapped to an account: %s", exc)
        bridge.record_failure("account_mapping", context, detail=str(exc))
        return _oauth_failed(request)

    frontend = request.app.state.settings.frontend_url.rstrip("/")
    query = urlencode(
        {
            "token": result.tokens.access_token,
            "refreshToken": result.tokens.refresh_token,
            "role": result.account.role.value,
        }
    )
    resp = RedirectResponse(f"{frontend}/auth?{query}", status_code=302)
    set_auth_cookie(resp, result.tokens.access_token, request.app.state.settings)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[AccountResponse])
def list_users(
    request: Request,
    role: Optional[Role] = None,
    account: Account = Depends(require_roles(Role.OPERATOR, Role.ADMINISTRATOR)),
) -> list[AccountResponse]:
    """List accounts, optionally filtered by ?role=. Operators and administrators."""
    accounts = request.app.state.accounts.list_accounts(role=role)
    return [AccountResponse.from_account(a) for a in accounts]


@router.patch(
    "/auth/users/{account_id}",
    response_model=AccountResponse,
    dependencies=[Depends(audit_action(AuditAction.ROLE_CHANGE, target_param="account_id"))],
)
def update_user(
    request: Request,
    account_id: int,
    body: AccountPatch,
    admin: Account = Depends(require_roles(Role.ADMINISTRATOR)),
) -> AccountResponse:
    """Block/unblock an account and/or change its role. Administrators only.

    The affected account is recorded as the actor and the administrator as
    the initiator. Blocking stamps blockedAt and revokes all of the
    account's sessions; unblocking clears blockedAt.
    """
    actions: list[AuditAction] = []
    if body.is_active is not None:
        actions.append(AuditAction.USER_UNBLOCK if body.is_active else AuditAction.USER_BLOCK)
    if body.role is not None:
        actions.append(AuditAction.ROLE_CHANGE)
    if not actions:
        raise ValidationError("Provide role and/or isActive.")
    scope = scope_for(request)
    scope.action, scope.extra_actions = actions[0], actions[1:]

    service: AccountService = request.app.state.account_service
    updated: Optional[Account] = None
    if body.is_active is not None:
        change = service.set_active(account_id, body.is_active, initiator=admin)
        scope.metadata["isActive"] = {"old": change.old, "new": change.new}
        updated = change.account
    if body.role is not None:
        change = service.set_role(account_id, body.role, initiator=admin)
        scope.metadata["role"] = {"old": change.old, "new": change.new}
        updated = change.account
    return AccountResponse.from_account(updated)
