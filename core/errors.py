"""
core/errors.py -- Domain error taxonomy.

Stores and services raise these; api/main.py turns them into the standard
ErrorResponse envelope. Each class carries its HTTP status and a stable
machine-readable code so the mapping lives in one place.

AuthError messages are deliberately uninformative: "Invalid credentials"
is used for unknown users and wrong passwords alike so the response never
reveals whether a username exists.

Layer rule: core/ is the kernel. No imports from the rest of the project.
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed input. The message names the violated rule."""

    status_code = 400
    code = "validation_error"
    default_message = "Invalid request."


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class AccountDisabledError(AuthError):
    status_code = 403
    code = "account_disabled"
    default_message = "Account disabled"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class MisconfigurationError(AppError):
    """Server-side configuration is missing or incomplete.

    caller_fixable=True downgrades the status to 400 for cases an admin can
    correct through the settings API (e.g. incomplete OIDC settings). A
    missing signing secret is never caller-fixable.
    """

    code = "misconfigured"
    default_message = "Auth not configured"

    def __init__(self, message: str | None = None, caller_fixable: bool = False) -> None:
        super().__init__(message)
        self.status_code = 400 if caller_fixable else 500


class ProviderError(AppError):
    """The external identity provider could not be reached or misbehaved."""

    status_code = 502
    code = "provider_error"
    default_message = "Identity provider unavailable"
