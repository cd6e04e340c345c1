"""
audit/models.py -- Domain types for the audit trail.

AuditEvent is what callers hand to the recorder. AuditRecord is what the
store returns: the same fields plus the id and the server-side timestamp.
Records are frozen -- nothing in the codebase can mutate one after creation.

Creation-time rules live in validate_event() so the recorder can reject a
malformed event before anything reaches the database.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AuditAction(str, Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PROFILE_UPDATE = "profile_update"
    PASSWORD_CHANGE = "password_change"
    CREDENTIALS_UPDATE = "credentials_update"
    USER_REGISTRATION = "user_registration"
    USER_DELETE = "user_delete"
    USER_BLOCK = "user_block"
    USER_UNBLOCK = "user_unblock"
    ROLE_CHANGE = "role_change"
    FAILED_LOGIN = "failed_login"
    TOKEN_REFRESH = "token_refresh"
    ACCESS_DENIED = "access_denied"
    OAUTH_FAILURE = "oauth_failure"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class LoginMethod(str, Enum):
    EMAIL = "email"
    USERNAME = "username"
    GOOGLE = "google"


# Actions performed by one account on another. The acting administrator is
# the initiator; the affected account is the actor.
ADMIN_ACTIONS = frozenset(
    {AuditAction.USER_DELETE, AuditAction.USER_BLOCK, AuditAction.USER_UNBLOCK, AuditAction.ROLE_CHANGE}
)

METHOD_REQUIRED = frozenset({AuditAction.LOGIN, AuditAction.FAILED_LOGIN})

# No authenticated account exists yet (or at all) when these are written.
ACTOR_OPTIONAL = frozenset(
    {
        AuditAction.USER_REGISTRATION,
        AuditAction.FAILED_LOGIN,
        AuditAction.ACCESS_DENIED,
        AuditAction.OAUTH_FAILURE,
    }
)

_EMAIL_LIKE = re.compile(r"\S+@\S+\.\S+")


def classify_identifier(identifier: str) -> LoginMethod:
    """Tag an identifier as email or username. Used for audit labelling only."""
    return LoginMethod.EMAIL if _EMAIL_LIKE.fullmatch(identifier or "") else LoginMethod.USERNAME


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from. Filled from the transport layer."""

    ip: str = "unknown"
    device: str = "unknown"


@dataclass
class AuditEvent:
    action: AuditAction
    context: RequestContext = field(default_factory=RequestContext)
    status: AuditStatus = AuditStatus.SUCCESS
    actor_id: Optional[int] = None
    initiator_id: Optional[int] = None
    method: Optional[LoginMethod] = None
    email: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AuditRecord:
    id: int
    action: AuditAction
    status: AuditStatus
    ip: str
    device: str
    timestamp: datetime
    actor_id: Optional[int] = None
    initiator_id: Optional[int] = None
    method: Optional[LoginMethod] = None
    email: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class AuditValidationError(ValueError):
    """An event violates a structural rule and was not persisted."""


def validate_event(event: AuditEvent) -> None:
    """Raise AuditValidationError if the event may not be recorded.

    Rules:
      - method is required for login and failed_login.
      - initiator is required for administrative actions.
      - actor is required unless the action is in ACTOR_OPTIONAL or the
        attempt failed (a failed attempt may never have identified anyone).
    """
    if not isinstance(event.action, AuditAction):
        raise AuditValidationError(f"Unknown audit action: {event.action!r}")
    if event.action in METHOD_REQUIRED and event.method is None:
        raise AuditValidationError(f"{event.action.value} requires a login method")
    if event.action in ADMIN_ACTIONS and event.initiator_id is None:
        raise AuditValidationError(f"{event.action.value} requires an initiator")
    if (
        event.actor_id is None
        and event.action not in ACTOR_OPTIONAL
        and event.status is not AuditStatus.FAILED
    ):
        raise AuditValidationError(f"{event.action.value} requires an actor")
