"""
core/errors.py -- Application error taxonomy.

Every error the service raises on purpose derives from AppError. Each class
carries the HTTP status and a stable machine-readable code; api/main.py turns
any AppError into the shared {"error": {...}} envelope.

  ValidationError     400  malformed or rejected input
  AuthenticationError 401  bad credentials or bad token
  AuthorizationError  403  role, ownership, or blocked account
  NotFoundError       404
  ConflictError       409  duplicate username/email (field-specific)
  InternalError       500  logged with context, generic message to client
  DeliveryFailed      503  a notification the request depends on was not sent

The audited flag is set by whoever already wrote an audit record for the
failure (the credential verifier, the authorization gate) so the request
wrapper in audit/route.py does not write a second one.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, audit/.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class AppError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        detail: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        self.field = field
        self.audited = False
        # Set when the failure concerns a known account; never sent to clients.
        self.account_id: Optional[int] = None
        super().__init__(self.message)

    def mark_audited(self) -> "AppError":
        self.audited = True
        return self

    def concerning(self, account_id: int) -> "AppError":
        self.account_id = account_id
        return self

    def to_detail(self) -> dict:
        body: dict = {"code": self.code, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        if self.field is not None:
            body["field"] = self.field
        return body


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


class ResetTokenInvalid(ValidationError):
    code = "reset_token_invalid"
    message = "Password reset token is invalid or has expired."


# ---------------------------------------------------------------------------
# 401
# ---------------------------------------------------------------------------


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    """Wrong identifier or wrong secret. The two cases are indistinguishable."""

    code = "invalid_credentials"
    message = "Invalid credentials."


class CredentialsMissing(AuthenticationError):
    code = "credentials_missing"
    message = "Basic authentication required."


class TokenMissing(AuthenticationError):
    code = "TOKEN_MISSING"
    message = "Bearer token missing."


class TokenInvalid(AuthenticationError):
    code = "TOKEN_INVALID"
    message = "Token is invalid."


class TokenExpired(AuthenticationError):
    code = "TOKEN_EXPIRED"
    message = "Token has expired."


class TokenStale(AuthenticationError):
    """Access token issued before the account's last credential change."""

    code = "TOKEN_STALE"
    message = "Credentials changed since this token was issued. Please log in again."


class AccountNotFound(AuthenticationError):
    code = "ACCOUNT_NOT_FOUND"
    message = "Account not found."


# ---------------------------------------------------------------------------
# 403
# ---------------------------------------------------------------------------


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    message = "Access denied."


class InsufficientRole(AuthorizationError):
    code = "insufficient_role"
    message = "Your role does not allow this operation."


class LocalAuthDisabled(AuthorizationError):
    code = "local_auth_disabled"
    message = "This account signs in with an external provider and has no local password."


def format_blocked_at(blocked_at: Optional[datetime]) -> str:
    """Render a block timestamp for client messages, e.g. '2025-03-01 14:05:09 UTC'."""
    if blocked_at is None:
        return "unknown date"
    return blocked_at.strftime("%Y-%m-%d %H:%M:%S UTC")


class AccountBlocked(AuthorizationError):
    code = "ACCOUNT_BLOCKED"

    def __init__(self, blocked_at: Optional[datetime]) -> None:
        self.blocked_at = blocked_at
        formatted = format_blocked_at(blocked_at)
        super().__init__(f"Account blocked on {formatted}.", detail=formatted)


# ---------------------------------------------------------------------------
# 404 / 409 / 5xx
# ---------------------------------------------------------------------------


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class ConflictError(AppError):
    status_code = 409
    code = "conflict"

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"An account with that {field} already exists.", field=field)


class InternalError(AppError):
    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."


class DeliveryFailed(AppError):
    status_code = 503
    code = "delivery_failed"
    message = "The message could not be sent. Try again later."
