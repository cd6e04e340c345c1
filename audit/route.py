"""
audit/route.py -- Request-scoped audit wrapper for FastAPI routes.

A protected route declares its action once:

    router = APIRouter(route_class=AuditedRoute)

    @router.post("/logout", dependencies=[Depends(audit_action(AuditAction.LOGOUT))])
    def logout(...): ...

audit_action() stores an AuditScope on request.state before the handler
runs. AuditedRoute wraps the route's ASGI handler and, once the handler has
either returned or raised, finalizes exactly one AuditRecord for the request:

  returned  -> status from the response code (2xx success, otherwise failed)
  raised    -> status failed, error code and HTTP status from the exception

Failures that were already audited where they happened (the authorization
gate, the credential verifier) carry AppError.audited and are not written a
second time. Routes without an AuditScope pass through untouched.

Handlers contribute what only they know -- the id of a freshly created
account, old/new values -- through scope_for(request).

This module may import from fastapi/starlette because it is part of the
request pipeline, like auth/dependencies.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute

from audit.models import AuditAction, AuditEvent, AuditStatus, LoginMethod, RequestContext
from core.errors import AppError

logger = logging.getLogger("civicauth.audit.route")


def request_context(request: Request) -> RequestContext:
    """Build the audit RequestContext (client IP, user agent) for a request."""
    ip = request.client.host if request.client else "unknown"
    return RequestContext(ip=ip or "unknown", device=request.headers.get("user-agent") or "unknown")


@dataclass
class AuditScope:
    action: AuditAction
    metadata_fields: tuple[str, ...] = ()
    # Path parameter naming the affected account for administrative actions.
    # When set, that account is the actor and the caller is the initiator.
    target_param: Optional[str] = None
    # A request that changes several things (role and active flag at once)
    # records one entry per action, all with the same outcome.
    extra_actions: list[AuditAction] = field(default_factory=list)
    actor_id: Optional[int] = None
    email: Optional[str] = None
    method: Optional[LoginMethod] = None
    metadata: dict = field(default_factory=dict)
    finalized: bool = False


def audit_action(
    action: AuditAction,
    *,
    metadata_fields: tuple[str, ...] = (),
    target_param: Optional[str] = None,
) -> Callable[[Request], AuditScope]:
    """Return a dependency that opens an AuditScope for the current request."""

    def _open_scope(request: Request) -> AuditScope:
        scope = AuditScope(action=action, metadata_fields=metadata_fields, target_param=target_param)
        request.state.audit_scope = scope
        return scope

    return _open_scope


def scope_for(request: Request) -> Optional[AuditScope]:
    return getattr(request.state, "audit_scope", None)


class AuditedRoute(APIRoute):
    """APIRoute that writes one audit record per request carrying an AuditScope."""

    def get_route_handler(self) -> Callable:
        original_handler = super().get_route_handler()

        async def audited_handler(request: Request) -> Response:
            try:
                response = await original_handler(request)
            except Exception as exc:
                _finalize_from_exception(request, exc)
                raise
            _finalize_from_response(request, response)
            return response

        return audited_handler


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


def _finalize_from_response(request: Request, response: Response) -> None:
    scope = scope_for(request)
    if scope is None or scope.finalized:
        return
    ok = 200 <= response.status_code < 300
    _write(
        request,
        scope,
        status=AuditStatus.SUCCESS if ok else AuditStatus.FAILED,
        extra={"statusCode": response.status_code},
    )


def _finalize_from_exception(request: Request, exc: Exception) -> None:
    scope = scope_for(request)
    if scope is None or scope.finalized:
        return
    if isinstance(exc, AppError) and exc.audited:
        scope.finalized = True
        return
    if isinstance(exc, AppError) and exc.account_id is not None and scope.actor_id is None:
        scope.actor_id = exc.account_id
    status_code, code = _describe_exception(exc)
    _write(
        request,
        scope,
        status=AuditStatus.FAILED,
        extra={"statusCode": status_code, "error": code},
    )


def _describe_exception(exc: Exception) -> tuple[int, str]:
    if isinstance(exc, AppError):
        return exc.status_code, exc.code
    if isinstance(exc, HTTPException):
        return exc.status_code, f"http_{exc.status_code}"
    if isinstance(exc, RequestValidationError):
        return 400, "validation_error"
    return 500, type(exc).__name__


def _write(request: Request, scope: AuditScope, status: AuditStatus, extra: dict) -> None:
    scope.finalized = True
    recorder = request.app.state.audit
    account = getattr(request.state, "account", None)
    caller_id = account.id if account is not None else None

    actor_id = scope.actor_id if scope.actor_id is not None else caller_id
    initiator_id = None
    if scope.target_param is not None:
        raw_target = request.path_params.get(scope.target_param)
        try:
            actor_id = int(raw_target) if raw_target is not None else None
        except (TypeError, ValueError):
            actor_id = None
        initiator_id = caller_id

    metadata = {name: request.path_params.get(name) for name in scope.metadata_fields}
    metadata.update(scope.metadata)
    metadata.update(extra)
    metadata["path"] = request.url.path

    context = request_context(request)
    for action in [scope.action, *scope.extra_actions]:
        event = AuditEvent(
            action=action,
            context=context,
            status=status,
            actor_id=actor_id,
            initiator_id=initiator_id,
            method=scope.method,
            email=scope.email or (account.email if account is not None else None),
            metadata=dict(metadata),
        )
        try:
            recorder.dispatch(event)
        except Exception:
            # A malformed event (e.g. an admin action reached without a caller)
            # must not turn a finished response into a 500.
            logger.exception("Audit wrapper could not record %s for %s", action.value, request.url.path)
