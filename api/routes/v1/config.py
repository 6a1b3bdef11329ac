"""
api/routes/v1/config.py -- Runtime security policy endpoints.

Routes:
  GET /api/v1/config/security  -- current SecurityConfig (settings:view)
  PUT /api/v1/config/security  -- merge + validate + persist (settings:edit)

PUT takes any subset of SecurityConfig fields. The merged result is validated
as a whole; an invalid payload (unknown key, out-of-range value, wrong type)
yields 422 config_invalid and the previous config stays in force. A policy
is never partially applied.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from auth.dependencies import get_auth_service, require_permission
from auth.models import Action, User
from auth.policy import SecurityConfig

logger = logging.getLogger("labgate.api")

router = APIRouter()


@router.get("/config/security", response_model=SecurityConfig)
def get_security_config(
    request: Request,
    current_user: User = Depends(require_permission("settings", Action.view)),
) -> SecurityConfig:
    return get_auth_service(request).config.current()


@router.put("/config/security", response_model=SecurityConfig)
def put_security_config(
    request: Request,
    body: dict[str, Any] = Body(...),
    current_user: User = Depends(require_permission("settings", Action.edit)),
) -> SecurityConfig:
    updated = get_auth_service(request).config.update(body)
    logger.info("Security config changed by user %s", current_user.id)
    return updated
