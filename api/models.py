"""
API request and response models for App Budget REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
budget/store.py, which own the internal domain representation. Route
handlers map between the two.

Wire keys are camelCase (the frontend's convention); Python attributes stay
snake_case. ApiModel wires that up once via an alias generator, and
populate_by_name lets route code construct models with snake_case names.

Request fields that a handler checks itself (to return the same messages as
the service layer, e.g. "Missing credentials") are Optional here so Pydantic
does not reject them first.
"""

from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import User


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthComponents(BaseModel):
    app: str = "ok"
    database: str = "ok"


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "healthy"
    version: str
    components: HealthComponents = Field(default_factory=HealthComponents)


class VersionResponse(ApiModel):
    current_version: str
    latest_version: Optional[str] = None
    update_available: bool = False


class OkResponse(ApiModel):
    ok: bool = True


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserOut(ApiModel):
    """Public shape of a user. Never carries the password hash."""

    id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    theme_preference: str = "light"
    role: str
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name,
            avatar_url=user.avatar_url,
            theme_preference=user.theme_preference,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login_at=user.last_login_at,
        )


class UserEnvelope(ApiModel):
    user: UserOut


class UserListResponse(ApiModel):
    users: list[UserOut]


class ProfilePatch(ApiModel):
    display_name: Optional[str] = Field(default=None, max_length=100)
    theme_preference: Optional[Literal["light", "dark"]] = None


class UserCreate(ApiModel):
    # Passwords are taken verbatim; username and display name are normalized by auth.service.
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=100)
    role: Literal["admin", "user"] = "user"


class UserAdminPatch(ApiModel):
    display_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Literal["admin", "user"]] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(ApiModel):
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=128)


class LoginResponse(ApiModel):
    token: str
    user: UserOut


class BootstrapRequest(ApiModel):
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=100)


class BootstrapStatusResponse(ApiModel):
    has_users: bool


class ResetRequest(ApiModel):
    login: Optional[str] = Field(
        default=None, max_length=255, validation_alias=AliasChoices("login", "username")
    )


class ResetRequestResponse(ApiModel):
    """Same keys whether or not an account matched; the values are null when none did."""

    ok: bool = True
    reset_token: Optional[str] = None
    expires_at: Optional[str] = None


class AdminResetResponse(ApiModel):
    reset_token: str
    expires_at: str


class ResetConsumeRequest(ApiModel):
    token: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = Field(default=None, max_length=128)


class ChangePasswordRequest(ApiModel):
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = Field(default=None, max_length=128)


class OidcPublicConfig(ApiModel):
    enabled: bool
    provider_name: str


class OidcLinkResponse(ApiModel):
    url: str


# ---------------------------------------------------------------------------
# Settings, months, backup
# ---------------------------------------------------------------------------


class SettingsResponse(ApiModel):
    settings: dict[str, Any]


class MonthOut(ApiModel):
    month_key: str
    data: dict[str, Any]


class MonthListResponse(ApiModel):
    months: list[MonthOut]


class MonthPut(ApiModel):
    # Any, not dict: a non-object payload is answered with the store's own message.
    data: Any = None


class ImportRequest(ApiModel):
    mode: str = "replace"
    snapshot: Any = None


class ImportResponse(ApiModel):
    ok: bool = True
    restored: dict[str, int]
