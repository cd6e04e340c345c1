"""
api/routes/audit.py -- Read-only audit trail endpoints (administrators only).

Routes:
  GET /api/audit/accounts/{account_id}    -- an account's history, newest first, paged
  GET /api/audit/initiators/{account_id}  -- administrative actions an account performed
  GET /api/audit/search                   -- records of one action in a time window

There is no write, update or delete endpoint. Records are created only by the
AuditRecorder.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditPage, AuditRecordResponse
from audit.models import AuditAction
from audit.store import AuditStore
from auth.dependencies import require_roles
from auth.models import Account, Role
from core.errors import ValidationError

router = APIRouter()

_admin = require_roles(Role.ADMINISTRATOR)


def _store(request: Request) -> AuditStore:
    return request.app.state.audit.store


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/audit/accounts/{account_id}", response_model=AuditPage)
def account_history(
    request: Request,
    account_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    admin: Account = Depends(_admin),
) -> AuditPage:
    records = _store(request).for_actor(account_id, page=page, limit=limit)
    return AuditPage(records=[AuditRecordResponse.from_record(r) for r in records], page=page, limit=limit)


@router.get("/audit/initiators/{account_id}", response_model=list[AuditRecordResponse])
def admin_actions(
    request: Request,
    account_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    admin: Account = Depends(_admin),
) -> list[AuditRecordResponse]:
    """What the given administrator did to other accounts, newest first."""
    return [AuditRecordResponse.from_record(r) for r in _store(request).by_initiator(account_id, limit=limit)]


@router.get("/audit/search", response_model=list[AuditRecordResponse])
def search(
    request: Request,
    action: AuditAction,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(default=500, ge=1, le=500),
    admin: Account = Depends(_admin),
) -> list[AuditRecordResponse]:
    """Records of one action between start and end (ISO 8601, both optional), oldest first.

    Times without an offset are taken as UTC.
    """
    start, end = _as_utc(start), _as_utc(end)
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end.", field="start")
    records = _store(request).by_action(action, start=start, end=end, limit=limit)
    return [AuditRecordResponse.from_record(r) for r in records]
