"""
api/main.py -- FastAPI application entry point for civicauth.

Exposes authentication, token lifecycle and the audit trail over HTTP for the
waste-reporting platform's frontend and services.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the frontend origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state storage for authlib

Lifespan wires every service onto app.state (init_state) and tears them down
symmetrically (close_state). Nothing is constructed at import time, so tests
can replace the lifespan and wire isolated stores.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.audit import router as audit_router
from api.routes.auth import router as auth_router
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.accounts import AccountService
from auth.credentials import CredentialVerifier
from auth.oauth import OAuthBridge, build_oauth_registry
from auth.password_reset import PasswordResetService, PasswordResetStore
from auth.store import AccountStore
from auth.token_store import RefreshTokenStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.errors import AppError
from core.notifier import build_notifier

VERSION = "1.0.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, _settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("civicauth.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(
    app: FastAPI,
    settings: Settings,
    audit_executor: Optional[ThreadPoolExecutor] = None,
    oauth_registry=None,
    notifier=None,
) -> None:
    """Construct every store and service and attach them to app.state.

    The audit store is built first: every other component may record events
    from its first call.
    """
    app.state.settings = settings
    app.state.audit = AuditRecorder(AuditStore(settings.database_url), executor=audit_executor)
    app.state.accounts = AccountStore(settings.database_url)
    app.state.refresh_tokens = RefreshTokenStore(settings.database_url)
    app.state.tokens = TokenIssuer(settings, app.state.accounts, app.state.refresh_tokens)
    app.state.verifier = CredentialVerifier(app.state.accounts, app.state.audit)
    app.state.notifier = notifier if notifier is not None else build_notifier(settings)
    app.state.account_service = AccountService(app.state.accounts, app.state.tokens, app.state.notifier)
    app.state.password_resets = PasswordResetStore(settings.database_url)
    app.state.password_reset = PasswordResetService(
        app.state.accounts, app.state.password_resets, app.state.tokens, app.state.notifier
    )
    app.state.oauth = oauth_registry if oauth_registry is not None else build_oauth_registry(settings)
    app.state.oauth_bridge = OAuthBridge(app.state.accounts, app.state.tokens, app.state.audit, app.state.notifier)


def close_state(app: FastAPI) -> None:
    # Drain queued audit writes before the stores go away.
    app.state.audit.shutdown()
    app.state.audit.store.close()
    app.state.refresh_tokens.close()
    app.state.password_resets.close()
    app.state.accounts.close()
    close = getattr(app.state.notifier, "close", None)
    if close is not None:
        close()


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The audit worker pool is shut down (and drained) before the
    stores are closed.
    """
    settings = get_settings()
    logger.info("civicauth API starting up")
    executor = (
        ThreadPoolExecutor(max_workers=settings.audit_workers, thread_name_prefix="audit")
        if settings.audit_workers > 0
        else None
    )
    init_state(app, settings, audit_executor=executor)
    logger.info(
        "Auth initialized (google_oauth=%s, access_ttl=%ss, audit_workers=%d)",
        settings.google_enabled,
        settings.access_token_ttl_seconds,
        settings.audit_workers,
    )

    yield

    close_state(app)
    logger.info("civicauth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="civicauth API",
    description="Accounts, tokens and audit trail for the municipal waste-reporting platform.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for
# the authorization code flow).
app.add_middleware(SessionMiddleware, secret_key=_settings.session_secret, https_only=_settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Every request passes through this coroutine before
# reaching any route handler; latency is measured around call_next.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(audit_router, prefix="/api", tags=["Audit"])
# The UI route guard is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, detail: ErrorDetail, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
        headers=headers,
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any deliberate application error with its own status and code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error(exc.status_code, ErrorDetail(**exc.to_detail()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    return _error(
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail)),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 naming the first offending field.

    Field names are the wire (camelCase) names, because Pydantic reports the
    alias it validated against.
    """
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    message = str(first.get("msg", "Request validation failed.")).removeprefix("Value error, ")
    return _error(
        400,
        ErrorDetail(
            code="validation_error",
            message=message,
            detail=str(errors),
            field=loc[-1] if loc else None,
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)), exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is logged only, never written to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancer health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
