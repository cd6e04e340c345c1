"""
auth/oauth.py -- Google sign-in: Authlib registry and the OAuth Bridge.

build_oauth_registry() is called from the application lifespan and the
registry is injected through app.state; nothing here reads settings at
import time. Google is registered only when both client id and secret are
configured.

OAuthBridge.exchange() maps a verified provider profile onto a local
account and issues the platform's own tokens:

  provider id known          -> that account
  email known, not linked    -> link the Google identity to it (idempotent)
  neither                    -> create an account with local auth disabled
                                and no password hash at all

Security notes:
  [H1] Email verification is mandatory. extract_google_profile() raises
       OAuthProfileError unless the provider confirms email_verified. An
       unverified address could belong to someone else, and linking by email
       would hand them the account. The profile is validated before any
       write happens.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional

from authlib.integrations.starlette_client import OAuth

from audit.models import AuditAction, AuditEvent, AuditStatus, LoginMethod, RequestContext
from audit.recorder import AuditRecorder
from auth.accounts import check_username
from auth.models import Account, AuthMethods, GoogleIdentity, TokenPair
from auth.store import AccountStore
from auth.tokens import TokenIssuer
from core.config import Settings
from core.errors import AccountBlocked, ConflictError
from core.notifier import Notification

logger = logging.getLogger("civicauth.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    oauth = OAuth()
    if settings.google_enabled:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url=GOOGLE_DISCOVERY_URL,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")
    return oauth


# ---------------------------------------------------------------------------
# Profile extraction [H1]
# ---------------------------------------------------------------------------


class OAuthProfileError(ValueError):
    """The provider response cannot be trusted for sign-in."""


@dataclass(frozen=True)
class ProviderProfile:
    provider_id: str
    email: str
    name: Optional[str] = None


def extract_google_profile(token: dict) -> ProviderProfile:
    """Extract the verified profile from a Google token response.

    Google returns an id_token whose parsed claims authlib exposes as
    token["userinfo"]. A missing email_verified claim counts as unverified.
    """
    userinfo = (token or {}).get("userinfo")
    if not userinfo:
        raise OAuthProfileError("google OAuth: no userinfo in token response")
    if not userinfo.get("email_verified", False):
        raise OAuthProfileError("google OAuth: email is not verified")
    email = (userinfo.get("email") or "").strip().lower()
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise OAuthProfileError("google OAuth: missing email or sub claim in userinfo")
    return ProviderProfile(provider_id=str(subject_id), email=email, name=userinfo.get("name"))


def _username_candidate(email: str) -> str:
    """Derive a valid username from the email's local part."""
    base = re.sub(r"[^a-zA-Z0-9._]", "", email.split("@", 1)[0])
    base = re.sub(r"[._]{2,}", "_", base).strip("._")[:24]
    if len(base) < 3:
        base = f"user{base}"
    return base


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OAuthResult:
    account: Account
    tokens: TokenPair
    is_new: bool


class OAuthBridge:
    def __init__(self, accounts: AccountStore, tokens: TokenIssuer, recorder: AuditRecorder, notifier) -> None:
        self.accounts = accounts
        self.tokens = tokens
        self.recorder = recorder
        self.notifier = notifier

    def exchange(self, profile: ProviderProfile, context: RequestContext) -> OAuthResult:
        """Resolve profile to an account and issue tokens.

        Raises AccountBlocked (audited as a failed google login) or
        OAuthProfileError when the email is bound to a different Google
        identity.
        """
        is_new = False
        account = self.accounts.get_by_google_id(profile.provider_id)
        if account is None:
            account = self.accounts.get_by_email(profile.email)
            if account is None:
                account = self._create(profile)
                is_new = True
            else:
                account = self._link(account, profile)

        if not account.is_active:
            error = AccountBlocked(account.blocked_at)
            self.recorder.log_failed_attempt(
                AuditAction.FAILED_LOGIN,
                error,
                context,
                identifier=profile.email,
                actor_id=account.id,
                metadata={"reason": "account_blocked", "provider": "google"},
            )
            raise error.mark_audited()

        self.accounts.update_last_login(account.id)
        pair = self.tokens.issue(account, context)
        self.recorder.dispatch(
            AuditEvent(
                action=AuditAction.USER_REGISTRATION if is_new else AuditAction.LOGIN,
                context=context,
                actor_id=account.id,
                method=LoginMethod.GOOGLE,
                email=account.email,
                metadata={"provider": "google"},
            )
        )
        return OAuthResult(account=account, tokens=pair, is_new=is_new)

    def _link(self, account: Account, profile: ProviderProfile) -> Account:
        google = account.auth_methods.google
        if google is not None and google.provider_id != profile.provider_id:
            raise OAuthProfileError("email is linked to a different Google account")
        if self.accounts.link_google(account.id, GoogleIdentity(profile.provider_id, profile.email)):
            logger.info("Linked Google identity to account %s", account.id)
            self.notifier.send(
                Notification(
                    recipient=account.email,
                    subject="Google sign-in was linked to your account",
                    template="provider_linked",
                    context={"provider": "google"},
                )
            )
        return self.accounts.get_by_id(account.id)

    def _create(self, profile: ProviderProfile) -> Account:
        base = check_username(_username_candidate(profile.email))
        username = base
        while self.accounts.get_by_username(username) is not None:
            username = f"{base}_{secrets.randbelow(10000):04d}"
        try:
            account_id = self.accounts.create_account(
                Account(
                    username=username,
                    email=profile.email,
                    password_hash=None,
                    auth_methods=AuthMethods(
                        local=False,
                        google=GoogleIdentity(provider_id=profile.provider_id, provider_email=profile.email),
                    ),
                    full_name=profile.name,
                )
            )
        except ConflictError:
            # A concurrent callback for the same profile won the insert.
            existing = self.accounts.get_by_google_id(profile.provider_id)
            if existing is None:
                raise
            return existing
        logger.info("Created account %s from Google sign-in", account_id)
        return self.accounts.get_by_id(account_id)

    def record_failure(self, reason: str, context: RequestContext, detail: Optional[str] = None) -> None:
        """Audit a failed OAuth round trip. Never raises."""
        try:
            self.recorder.dispatch(
                AuditEvent(
                    action=AuditAction.OAUTH_FAILURE,
                    context=context,
                    status=AuditStatus.FAILED,
                    method=LoginMethod.GOOGLE,
                    metadata={"reason": reason, "detail": detail},
                )
            )
        except Exception:
            logger.exception("Could not record OAuth failure (%s)", reason)
