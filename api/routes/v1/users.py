"""
api/routes/v1/users.py -- User registry management endpoints.

Routes:
  POST   /api/v1/users                   -- create user (users:create)
  GET    /api/v1/users                   -- list users (users:view)
  GET    /api/v1/users/{id}              -- user detail (users:view)
  PATCH  /api/v1/users/{id}              -- partial update (users:edit)
  POST   /api/v1/users/{id}/deactivate   -- deactivate + end sessions (users:edit)
  POST   /api/v1/users/{id}/reactivate   -- reactivate (users:edit)
  DELETE /api/v1/users/{id}              -- remove from registry (users:delete)

Error mapping (AuthError, rendered in api/main.py):
  DuplicateIdentityError -> 409 duplicate
  WeakCredentialError    -> 422 weak_password + violations
  NotFoundError          -> 404 not_found

Guards on deactivate, delete, PATCH is_active=false and PATCH role away from admin:
  - a caller cannot apply any of these to their own account;
  - the last active admin cannot lose admin access through any of them.

Tenant scoping: a caller bound to a tenant (collection center) only sees and
manages users of the same tenant.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response

from api.models import UserCreate, UserResponse, UserUpdate
from api.notifications import notify_user_created
from auth.dependencies import get_auth_service, require_permission
from auth.errors import NotFoundError
from auth.models import Action, NewUser, Role, User, UserPatch
from auth.service import AuthService

router = APIRouter()


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_permission("users", Action.create)),
) -> UserResponse:
    """Create a user. Notifications go out after the response, best-effort."""
    service = get_auth_service(request)
    tenant_id = body.tenant_id if current_user.tenant_id is None else current_user.tenant_id
    user = service.users.create(
        NewUser(
            username=body.username,
            email=body.email,
            name=body.name,
            password=body.password,
            role=body.role,
            tenant_id=tenant_id,
            permissions=[g.to_domain() for g in body.permissions] if body.permissions is not None else None,
        )
    )
    background_tasks.add_task(notify_user_created, request.app.state.notifier, user)
    return UserResponse.from_domain(user)


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    tenant_id: str | None = Query(default=None, max_length=64),
    current_user: User = Depends(require_permission("users", Action.view)),
) -> list[UserResponse]:
    if current_user.tenant_id is not None:
        tenant_id = current_user.tenant_id
    users = get_auth_service(request).users.list_users(tenant_id=tenant_id)
    return [UserResponse.from_domain(u) for u in users]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", Action.view)),
) -> UserResponse:
    target = _load_in_scope(get_auth_service(request), user_id, current_user)
    return UserResponse.from_domain(target)


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    current_user: User = Depends(require_permission("users", Action.edit)),
) -> UserResponse:
    """Partially update a user. Password strength is checked only if a password is sent."""
    service = get_auth_service(request)
    target = _load_in_scope(service, user_id, current_user)

    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    demoting_admin = target.role == Role.admin and body.role is not None and body.role != Role.admin
    if fields.get("is_active") is False or demoting_admin:
        _guard_admin_removal(service, target, current_user)
    if current_user.tenant_id is not None:
        fields.pop("tenant_id", None)

    patch = UserPatch(
        name=body.name,
        email=body.email,
        role=body.role,
        permissions=[g.to_domain() for g in body.permissions] if body.permissions is not None else None,
        tenant_id=fields.get("tenant_id"),
        is_active=body.is_active,
        password=body.password,
    )
    updated = service.users.update(user_id, patch)
    if body.is_active is False:
        service.sessions.revoke_all_for_user(user_id)
    return UserResponse.from_domain(updated)


@router.post("/users/{user_id}/deactivate", response_model=UserResponse)
def deactivate_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", Action.edit)),
) -> UserResponse:
    service = get_auth_service(request)
    target = _load_in_scope(service, user_id, current_user)
    _guard_admin_removal(service, target, current_user)
    return UserResponse.from_domain(service.deactivate_user(user_id))


@router.post("/users/{user_id}/reactivate", response_model=UserResponse)
def reactivate_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", Action.edit)),
) -> UserResponse:
    service = get_auth_service(request)
    _load_in_scope(service, user_id, current_user)
    return UserResponse.from_domain(service.users.reactivate(user_id))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_permission("users", Action.delete)),
) -> Response:
    service = get_auth_service(request)
    target = _load_in_scope(service, user_id, current_user)
    _guard_admin_removal(service, target, current_user)
    service.delete_user(user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_in_scope(service: AuthService, user_id: str, current_user: User) -> User:
    """Fetch a user, treating out-of-tenant users as not found."""
    target = service.users.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found.")
    if current_user.tenant_id is not None and target.tenant_id != current_user.tenant_id:
        raise NotFoundError("User not found.")
    return target


def _guard_admin_removal(service: AuthService, target: User, current_user: User) -> None:
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot remove or demote your own account."},
        )
    if target.role == Role.admin and target.is_active and service.users.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )
