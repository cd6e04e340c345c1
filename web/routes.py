"""
web/routes.py -- Route guard for the staff pages of the frontend.

The frontend is a separate single-page app; its operator and administrator
sections are reached through these server routes so the role check runs on
the server. The guard answers with a redirect, never with JSON:

  authenticated, role allowed    -> {FRONTEND_URL}{path}
  authenticated, role too low    -> {FRONTEND_URL}/profile
  not authenticated / bad token  -> {FRONTEND_URL}/auth?next={path}

Authentication uses the same gate as the API (evaluate_bearer), which also
reads the httpOnly access_token cookie set at login, and the same
role_allows() capability check. Rejections are audited by the gate;
insufficient-role denials are audited here.

Routes:
  GET /operator[/{rest}]  -- operators and administrators
  GET /admin[/{rest}]     -- administrators
"""

import logging
from typing import Iterable, Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse

from audit.models import AuditAction, AuditEvent, AuditStatus
from audit.route import request_context
from auth.dependencies import evaluate_bearer
from auth.models import Role, role_allows

logger = logging.getLogger("civicauth.web")

router = APIRouter()

_OPERATOR_ROLES = (Role.OPERATOR, Role.ADMINISTRATOR)
_ADMIN_ROLES = (Role.ADMINISTRATOR,)


def _safe_path(path: str) -> str:
    """Keep only a server-local path for ?next= [C2].

    Rejects protocol-relative targets like //attacker.com.
    """
    if path.startswith("/") and not path.startswith("//"):
        return path
    return "/"


def _guard(request: Request, allowed: Iterable[Role]) -> RedirectResponse:
    frontend = request.app.state.settings.frontend_url.rstrip("/")
    path = _safe_path(request.url.path)

    account, error = evaluate_bearer(request)
    if account is None:
        logger.info("UI guard: %s rejected (%s)", path, error.code if error else "unknown")
        return RedirectResponse(f"{frontend}/auth?next={quote(path)}", status_code=302)

    if not role_allows(account.role, allowed):
        _record_denial(request, account.id)
        return RedirectResponse(f"{frontend}/profile", status_code=302)

    return RedirectResponse(f"{frontend}{path}", status_code=302)


def _record_denial(request: Request, account_id: Optional[int]) -> None:
    try:
        request.app.state.audit.dispatch(
            AuditEvent(
                action=AuditAction.ACCESS_DENIED,
                context=request_context(request),
                status=AuditStatus.FAILED,
                actor_id=account_id,
                metadata={"reason": "insufficient_role", "path": request.url.path, "method": request.method},
            )
        )
    except Exception:
        logger.exception("Could not record UI guard denial on %s", request.url.path)


@router.get("/operator", include_in_schema=False)
@router.get("/operator/{rest:path}", include_in_schema=False)
def operator_pages(request: Request, rest: str = "") -> RedirectResponse:
    return _guard(request, _OPERATOR_ROLES)


@router.get("/admin", include_in_schema=False)
@router.get("/admin/{rest:path}", include_in_schema=False)
def admin_pages(request: Request, rest: str = "") -> RedirectResponse:
    return _guard(request, _ADMIN_ROLES)
