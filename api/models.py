"""
API request and response models for the civicauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Wire format is camelCase (accessToken, refreshToken, isActive...). Every model
derives from _CamelModel, which generates the aliases and still accepts the
snake_case field names when constructing models in Python.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from audit.models import AuditRecord
from auth.accounts import check_email, check_password, check_username
from auth.models import Account, Role


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/auth/register.

    The validators reuse the account service's checks, so the API rejects
    exactly what the service would reject, only earlier and with the field
    name attached.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(max_length=30)
    email: str = Field(max_length=255)
    # Characters here; check_password also caps the UTF-8 size at 72 bytes.
    password: str = Field(max_length=64)
    full_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("username")
    @classmethod
    def valid_username(cls, value: str) -> str:
        return check_username(value)

    @field_validator("email")
    @classmethod
    def valid_email(cls, value: str) -> str:
        return check_email(value)

    @field_validator("password")
    @classmethod
    def valid_password(cls, value: str) -> str:
        return check_password(value)


class RefreshRequest(_CamelModel):
    # Optional so a missing token is a 400 with field=refreshToken from the
    # handler, not a generic schema error.
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(_CamelModel):
    all_devices: bool = False


class ForgotPasswordRequest(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(max_length=255)

    @field_validator("email")
    @classmethod
    def valid_email(cls, value: str) -> str:
        return check_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(max_length=64)

    @field_validator("password")
    @classmethod
    def valid_password(cls, value: str) -> str:
        return check_password(value)


class CredentialsUpdateRequest(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    current_password: str = Field(min_length=1, max_length=64)
    username: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = Field(default=None, max_length=255)
    new_password: Optional[str] = Field(default=None, max_length=64)


class AccountPatch(_CamelModel):
    """Request body for PATCH /api/auth/users/{id}. At least one field is required."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthMethodsResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    local: bool
    google: bool


class AccountResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    username: str
    email: str
    role: Role
    full_name: Optional[str] = None
    is_active: bool
    blocked_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    auth_methods: AuthMethodsResponse

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Factory Method: map the domain Account onto the API contract.

        The password hash has no field here, so it cannot leak even if a
        caller passes an account loaded with secrets.
        """
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            role=account.role,
            full_name=account.full_name,
            is_active=account.is_active,
            blocked_at=account.blocked_at,
            last_login=account.last_login,
            created_at=account.created_at,
            auth_methods=AuthMethodsResponse(
                local=account.auth_methods.local,
                google=account.auth_methods.google is not None and account.auth_methods.google.enabled,
            ),
        )


class TokenResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"
    role: Role


class LogoutResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str
    sessions_revoked: int


class MessageResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str


class PasswordResetResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str
    sessions_revoked: int


class CredentialsUpdateResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    account: AccountResponse
    changed: list[str]
    sessions_revoked: int


class AuditRecordResponse(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    action: str
    status: str
    actor_id: Optional[int] = None
    initiator_id: Optional[int] = None
    method: Optional[str] = None
    email: Optional[str] = None
    ip: str
    device: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            action=record.action.value,
            status=record.status.value,
            actor_id=record.actor_id,
            initiator_id=record.initiator_id,
            method=record.method.value if record.method else None,
            email=record.email,
            ip=record.ip,
            device=record.device,
            metadata=record.metadata,
            timestamp=record.timestamp,
        )


class AuditPage(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    records: list[AuditRecordResponse]
    page: int
    limit: int


class ErrorDetail(BaseModel):
    """The single error shape every handler in api/main.py emits."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
