"""
api/routes/users.py -- Profile and user management REST endpoints.

Routes:
  GET   /api/users/me                      -- current user (requires auth)
  PATCH /api/users/me                      -- displayName / themePreference
  POST  /api/users/me/avatar               -- multipart upload, field "avatar"
  GET   /api/users                         -- list all users (admin only)
  POST  /api/users                         -- create user (admin only)
  PATCH /api/users/{id}                    -- displayName / role / isActive (admin only)
  POST  /api/users/{id}/reset-password     -- issue a reset token (admin only)

Security:
  [M4] PATCH /users/{id} blocks self-deactivation, self-demotion, and any
       change that would leave no active admin.
  Avatars: content type is checked against an allow-list and the file name
  is generated server-side; nothing from the client reaches the path.
"""

from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from api.models import (
    AdminResetResponse,
    ProfilePatch,
    UserAdminPatch,
    UserCreate,
    UserEnvelope,
    UserListResponse,
    UserOut,
)
from auth import service
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from auth.store import UserStore
from core.config import get_settings
from core.errors import NotFoundError, ValidationError

logger = logging.getLogger("appbudget.api.users")

# Auth policy:
# - /api/users/me*:                     requires auth (get_current_user)
# - everything else under /api/users:   requires admin (require_admin)
router = APIRouter()

AVATAR_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}
AVATAR_URL_PREFIX = "/uploads/avatars/"


def _fresh(user_store: UserStore, user_id: str) -> UserEnvelope:
    user = user_store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found")
    return UserEnvelope(user=UserOut.from_user(user))


# ---------------------------------------------------------------------------
# Own profile
# ---------------------------------------------------------------------------


@router.get("/users/me", response_model=UserEnvelope)
def get_me(current_user: User = Depends(get_current_user)) -> UserEnvelope:
    return UserEnvelope(user=UserOut.from_user(current_user))


@router.patch("/users/me", response_model=UserEnvelope)
def update_me(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> UserEnvelope:
    user_store: UserStore = request.app.state.user_store
    updates: dict = {}
    if "display_name" in body.model_fields_set:
        updates["display_name"] = service.normalize_display_name(body.display_name)
    if body.theme_preference is not None:
        updates["theme_preference"] = body.theme_preference
    if not updates:
        raise ValidationError("No updates provided")
    user_store.update_user(current_user.id, **updates)
    return _fresh(user_store, current_user.id)


@router.post("/users/me/avatar", response_model=UserEnvelope)
def upload_avatar(
    request: Request,
    avatar: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
) -> UserEnvelope:
    """Store a new avatar and point the profile at it. The previous file is removed."""
    settings = get_settings()
    extension = AVATAR_TYPES.get((avatar.content_type or "").lower())
    if extension is None:
        raise ValidationError("Unsupported image type")
    data = avatar.file.read(settings.avatar_max_bytes + 1)
    if len(data) > settings.avatar_max_bytes:
        raise HTTPException(
            status_code=413,
            detail={"code": "payload_too_large", "message": "Avatar file is too large."},
        )
    if not data:
        raise ValidationError("Empty file")

    avatar_dir = Path(settings.uploads_dir, "avatars")
    avatar_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{current_user.id}-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{extension}"
    (avatar_dir / filename).write_bytes(data)

    previous = current_user.avatar_url
    user_store: UserStore = request.app.state.user_store
    user_store.update_user(current_user.id, avatar_url=AVATAR_URL_PREFIX + filename)
    if previous and previous.startswith(AVATAR_URL_PREFIX):
        # Path(...).name drops any directory part a tampered URL might carry.
        (avatar_dir / Path(previous).name).unlink(missing_ok=True)
    return _fresh(user_store, current_user.id)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(request: Request, current_user: User = Depends(require_admin)) -> UserListResponse:
    user_store: UserStore = request.app.state.user_store
    return UserListResponse(users=[UserOut.from_user(u) for u in user_store.list_users()])


@router.post("/users", response_model=UserEnvelope, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserEnvelope:
    """Create a local account. Duplicate usernames (case-insensitive) answer 409."""
    user_store: UserStore = request.app.state.user_store
    user = service.create_user(user_store, body.username, body.password, body.display_name, body.role)
    return UserEnvelope(user=UserOut.from_user(user))


@router.patch("/users/{user_id}", response_model=UserEnvelope)
def update_user(
    request: Request,
    user_id: str,
    body: UserAdminPatch,
    current_user: User = Depends(require_admin),
) -> UserEnvelope:
    """Update a user's display name, role or active status. Admin only.

    [M4] Prevents:
      - Self-deactivation and self-demotion (admin locking themselves out).
      - Deactivating or demoting the last active admin (no recovery path
        without database access).
    """
    user_store: UserStore = request.app.state.user_store
    target = user_store.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found")

    removes_admin = target.role == "admin" and target.is_active and (
        (body.role is not None and body.role != "admin") or body.is_active is False
    )
    if target.id == current_user.id:
        if body.is_active is False:
            raise ValidationError("You cannot deactivate your own account.")
        if body.role is not None and body.role != "admin":
            raise ValidationError("You cannot remove your own admin role.")
    if removes_admin and user_store.count_active_admins() <= 1:
        raise ValidationError("Cannot remove the last active admin.")

    updates: dict = {}
    if "display_name" in body.model_fields_set:
        updates["display_name"] = service.normalize_display_name(body.display_name)
    if body.role is not None:
        updates["role"] = body.role
    if body.is_active is not None:
        updates["is_active"] = body.is_active
    if not updates:
        raise ValidationError("No updates provided")

    user_store.update_user(user_id, **updates)
    if "role" in updates or "is_active" in updates:
        logger.info(
            "User %s updated by admin %s (role=%s, is_active=%s)",
            user_id,
            current_user.id,
            updates.get("role", target.role),
            updates.get("is_active", target.is_active),
        )
    return _fresh(user_store, user_id)


@router.post("/users/{user_id}/reset-password", response_model=AdminResetResponse)
def admin_reset_password(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_admin),
) -> AdminResetResponse:
    """Issue a reset token on the user's behalf; the admin passes it on out of band."""
    user_store: UserStore = request.app.state.user_store
    issued = service.admin_issue_reset(user_store, user_id)
    logger.info("Admin %s issued a reset token for user %s", current_user.id, user_id)
    return AdminResetResponse(reset_token=issued.token, expires_at=issued.expires_at)
