"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

A session id is accepted from, in priority order:
  1. the "session_id" cookie -- set by POST /auth/login for browser clients;
  2. an "Authorization: Bearer <session_id>" header -- API clients.

Resolving a session also touches it, so every authorized request slides the
session's expiry forward.

get_current_user() raises HTTP 401 when no live session is presented.
require_permission(module, action) builds a dependency that additionally
raises HTTP 403 unless has_permission() allows the action.

Layer rule: no imports from api/ or core/. Cookie security flags are
passed in by the caller. This module may import fastapi because it is part of the DI system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Request, Response

from auth.errors import SessionExpiredError
from auth.models import Action, Session, User
from auth.permissions import has_permission
from auth.service import AuthService

SESSION_COOKIE = "session_id"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def session_id_from_request(request: Request) -> str | None:
    """Return the presented session id, or None if the request carries none."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            session_id = auth_header[7:].strip()
    return session_id or None


def get_current_user(request: Request) -> User:
    """Require a live session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    session_id = session_id_from_request(request)
    if session_id is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    try:
        user = get_auth_service(request).authenticator.resolve_session(session_id)
    except SessionExpiredError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc
    request.state.session_id = session_id
    return user


def require_permission(module: str, action: Action) -> Callable[[Request], User]:
    """Build a dependency that requires `action` on `module`.

    Usage:
        @router.post("/users", dependencies=[Depends(require_permission("users", Action.create))])
    or, when the handler needs the user:
        current_user: User = Depends(require_permission("users", Action.create))
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if not has_permission(user, module, action):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission '{action.value}' on '{module}' required."},
            )
        return user

    return dependency


def set_session_cookie(response: Response, session: Session, secure: bool) -> None:
    """Write the session id as an httpOnly cookie.

    No max_age: the cookie lives for the browser session and the server-side
    sliding expiry decides validity. samesite="lax" blocks cross-site POSTs.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=session.session_id,
        httponly=True,
        samesite="lax",
        secure=secure,
    )
