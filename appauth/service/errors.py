from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - server_error (500)
    Domain subclasses narrow ``error_code`` further.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidAppEndpoint(ValidationError):
    """The calling endpoint does not map to a known app."""
    error_code = "invalid_app_endpoint"

    def __init__(self, endpoint: Optional[str] = None) -> None:
        super().__init__("Invalid app endpoint", detail={"app_endpoint": endpoint})


class RoleInvalid(ValidationError):
    """A role outside the closed role set was requested."""
    error_code = "invalid_role"

    def __init__(self, role: str) -> None:
        super().__init__(f"Invalid role: {role}", detail={"role": role})


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredential(AuthenticationError):
    """Unknown email, unregistered app and wrong password all look alike."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class WrongAuthMethod(AuthenticationError):
    error_code = "wrong_auth_method"

    def __init__(self, required_method: str) -> None:
        super().__init__(
            f"Must use {required_method} to access this app",
            detail={"auth_method": required_method},
        )
        self.required_method = required_method


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RoleNotGranted(ForbiddenError):
    error_code = "role_not_granted"

    def __init__(self, role: str, available_roles: list[str]) -> None:
        super().__init__(
            f"User does not have role '{role}' for this app",
            detail={"role": role, "available_roles": list(available_roles)},
        )
        self.available_roles = list(available_roles)


class AccountDeactivated(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(self) -> None:
        super().__init__("Account is deactivated")


class AppAccessDeactivated(ForbiddenError):
    error_code = "app_access_deactivated"

    def __init__(self, app_identifier: str) -> None:
        super().__init__(
            "Access to this app has been deactivated",
            detail={"app_identifier": app_identifier},
        )


class LockedError(ServiceError):
    """Temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "locked"


class AccountLocked(LockedError):
    error_code = "account_locked"

    def __init__(self, locked_until=None) -> None:
        super().__init__(
            "Account is temporarily locked",
            detail={"locked_until": locked_until.isoformat() if locked_until else None},
        )


class AppAccessLocked(LockedError):
    error_code = "app_access_locked"

    def __init__(self, app_identifier: str, locked_until=None) -> None:
        super().__init__(
            "Too many failed attempts for this app; try again later",
            detail={
                "app_identifier": app_identifier,
                "locked_until": locked_until.isoformat() if locked_until else None,
            },
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmail(ConflictError):
    error_code = "duplicate_email"

    def __init__(self) -> None:
        super().__init__("Email already registered")


class AlreadyRegistered(ConflictError):
    error_code = "already_registered"

    def __init__(self, app_identifier: str) -> None:
        super().__init__(
            "User already registered for this app",
            detail={"app_identifier": app_identifier},
        )


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidAppEndpoint",
    "RoleInvalid",
    "AuthenticationError",
    "InvalidCredential",
    "WrongAuthMethod",
    "ForbiddenError",
    "RoleNotGranted",
    "AccountDeactivated",
    "AppAccessDeactivated",
    "LockedError",
    "AccountLocked",
    "AppAccessLocked",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmail",
    "AlreadyRegistered",
    "ServerError",
]
