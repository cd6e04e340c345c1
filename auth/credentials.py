"""
auth/credentials.py -- The Credential Verifier.

authenticate() turns (identifier, secret) into an Account or an error, and
writes exactly one audit record for the attempt:

  success                         -> login         (method email/username)
  unknown identifier              -> failed_login  reason unknown_identifier
  account without a local secret  -> failed_login  reason local_auth_disabled
  wrong secret                    -> failed_login  reason invalid_password
  right secret, blocked account   -> failed_login  reason account_blocked

The first three raise the same InvalidCredentials with the same message, and
all three run exactly one bcrypt comparison [C1]. The blocked case is only
reachable with the correct secret, so revealing it leaks nothing a guesser
could use.

Errors leave here already audited (AppError.mark_audited) so the request
wrapper does not write them again.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditAction, AuditEvent, RequestContext, classify_identifier
from audit.recorder import AuditRecorder
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import public_account, verify_dummy, verify_password
from core.errors import AccountBlocked, AppError, InvalidCredentials

logger = logging.getLogger("civicauth.auth.credentials")


class CredentialVerifier:
    def __init__(self, accounts: AccountStore, recorder: AuditRecorder) -> None:
        self.accounts = accounts
        self.recorder = recorder

    def authenticate(self, identifier: str, secret: str, context: RequestContext) -> Account:
        """Verify a password login. Returns the account without its hash.

        Raises InvalidCredentials or AccountBlocked, both marked audited.
        """
        identifier = (identifier or "").strip()
        method = classify_identifier(identifier)
        account = self.accounts.get_by_identifier(identifier, include_secret=True) if identifier else None

        if account is None or not account.auth_methods.local or account.password_hash is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_dummy(secret)
            reason = "unknown_identifier" if account is None else "local_auth_disabled"
            raise self._reject(InvalidCredentials(), identifier, context, reason, account)

        if not verify_password(secret, account.password_hash):
            raise self._reject(InvalidCredentials(), identifier, context, "invalid_password", account)

        if not account.is_active:
            raise self._reject(AccountBlocked(account.blocked_at), identifier, context, "account_blocked", account)

        self.recorder.dispatch(
            AuditEvent(
                action=AuditAction.LOGIN,
                context=context,
                actor_id=account.id,
                method=method,
                email=account.email,
            )
        )
        try:
            self.accounts.update_last_login(account.id)
        except SQLAlchemyError:
            # The login itself stands; only the display timestamp is lost.
            logger.exception("Could not stamp last login for account %s", account.id)
        logger.info("Login for account %s via %s from %s", account.id, method.value, context.ip)
        return public_account(account)

    def _reject(
        self,
        error: AppError,
        identifier: str,
        context: RequestContext,
        reason: str,
        account: Optional[Account],
    ) -> AppError:
        self.recorder.log_failed_attempt(
            AuditAction.FAILED_LOGIN,
            error,
            context,
            identifier=identifier,
            actor_id=account.id if account is not None else None,
            metadata={"reason": reason},
        )
        logger.info("Failed login (%s) from %s", reason, context.ip)
        return error.mark_audited()
