"""
api/routes/v1/auth.py -- Login, logout and session introspection endpoints.

Routes:
  POST /api/v1/auth/login        -- password login; issues a session (cookie + body)
  POST /api/v1/auth/logout       -- revokes the presented session; 204
  GET  /api/v1/auth/me           -- current user + password_expired (requires session)
  GET  /api/v1/auth/permission   -- ?module=&action= -> {allowed} (requires session)
  GET  /api/v1/auth/attempts     -- login attempt audit trail (requires audit:view)

Login outcome mapping (raised as AuthError, rendered by api/main.py):
  LoginSuccess        -> 200 LoginResponse (+ password_expired, advisory)
  InvalidCredentials  -> 401 invalid_credentials (same body for unknown user
                         and wrong password)
  AccountLocked       -> 423 locked + unlocks_at
  AccountInactive     -> 403 inactive

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit) on top
  of the per-identity lockout.
  Cache-Control: no-store on every login response.
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginAttemptResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PermissionResponse,
    UserResponse,
)
from auth.db import utcnow
from auth.dependencies import (
    SESSION_COOKIE,
    get_auth_service,
    get_current_user,
    require_permission,
    session_id_from_request,
    set_session_cookie,
)
from auth.errors import AccountInactiveError, AccountLockedError, InvalidCredentialsError
from auth.models import AccountInactive, AccountLocked, Action, LoginSuccess, User
from auth.permissions import has_permission
from auth.policy import password_expired
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:       public
# - POST /api/v1/auth/logout:      public -- revoking an unknown session is a no-op
# - GET  /api/v1/auth/me:          requires session
# - GET  /api/v1/auth/permission:  requires session
# - GET  /api/v1/auth/attempts:    requires audit:view
router = APIRouter()


@limiter.limit(_settings.login_rate_limit)  # must sit ABOVE @router to keep FastAPI introspection intact
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identity (username or e-mail) and password; issue a session."""
    service = get_auth_service(request)
    result = service.authenticator.login(
        body.identity,
        body.credential,
        source_address=request.client.host if request.client else None,
        client_agent=request.headers.get("User-Agent"),
    )

    if isinstance(result, AccountLocked):
        raise AccountLockedError(result.unlocks_at)
    if isinstance(result, AccountInactive):
        raise AccountInactiveError()
    if not isinstance(result, LoginSuccess):
        raise InvalidCredentialsError()

    payload = LoginResponse(
        session_id=result.session.session_id,
        expires_at=result.session.expires_at,
        user=UserResponse.from_domain(result.user),
        password_expired=password_expired(result.user, service.config.current(), result.session.issued_at),
    )
    resp = JSONResponse(status_code=200, content=payload.model_dump(mode="json"))
    set_session_cookie(resp, result.session, secure=_settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: LogoutRequest | None = Body(default=None)) -> Response:
    """Revoke the session from the cookie, bearer header or body. Idempotent."""
    session_id = session_id_from_request(request) or (body.session_id if body else None)
    if session_id:
        get_auth_service(request).authenticator.logout(session_id)
    resp = Response(status_code=204)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    expired = password_expired(current_user, get_auth_service(request).config.current(), utcnow())
    return MeResponse.from_domain(current_user).model_copy(update={"password_expired": expired})


@router.get("/auth/permission", response_model=PermissionResponse)
def check_permission(
    module: str = Query(min_length=1, max_length=64),
    action: str = Query(min_length=1, max_length=16),
    current_user: User = Depends(get_current_user),
) -> PermissionResponse:
    """Answer whether the current user may perform action on module.

    Unknown action names are answered with allowed=false rather than 422, so
    clients can probe capabilities without knowing the full action list.
    """
    return PermissionResponse(
        module=module,
        action=action,
        allowed=has_permission(current_user, module, action),
    )


@router.get("/auth/attempts", response_model=list[LoginAttemptResponse])
def list_attempts(
    request: Request,
    identity: str | None = Query(default=None, max_length=320),
    limit: int = Query(default=100, ge=1, le=1000),
    current_user: User = Depends(require_permission("audit", Action.view)),
) -> list[LoginAttemptResponse]:
    """Newest-first login attempt history, optionally for one identity."""
    attempts = get_auth_service(request).attempts.recent_attempts(limit=limit, identity=identity)
    return [LoginAttemptResponse.from_domain(a) for a in attempts]
