"""
api/routes/settings.py -- Read and update the shared settings document.

Routes:
  GET   /api/settings   -- requires auth; admins see everything, others lose OIDC fields
  PATCH /api/settings   -- requires auth; partial update, best-effort merge

Non-admins may PATCH the fields they can see. A PATCH in which nothing
survives projection and validation answers 400 "No updates provided".
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from api.models import SettingsResponse
from appsettings.store import SettingsStore
from auth.dependencies import get_current_user
from auth.models import User

router = APIRouter()


@router.get("/settings", response_model=SettingsResponse)
def read_settings(request: Request, current_user: User = Depends(get_current_user)) -> SettingsResponse:
    store: SettingsStore = request.app.state.settings_store
    return SettingsResponse(settings=store.read(current_user.role))


@router.patch("/settings", response_model=SettingsResponse)
def update_settings(
    request: Request,
    body: Any = Body(...),
    current_user: User = Depends(get_current_user),
) -> SettingsResponse:
    store: SettingsStore = request.app.state.settings_store
    return SettingsResponse(settings=store.update(body, current_user.role))
