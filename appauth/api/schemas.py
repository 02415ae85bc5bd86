from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from appauth.storage.models import AuthMethod, Role

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "locked",
    "server_error",
    "service_unavailable",
    "invalid_app_endpoint",
    "invalid_role",
    "invalid_credentials",
    "wrong_auth_method",
    "role_not_granted",
    "account_deactivated",
    "app_access_deactivated",
    "account_locked",
    "app_access_locked",
    "duplicate_email",
    "already_registered",
    "invalid_refresh_token",
    "invalid_oauth_state",
    "oauth_exchange_failed",
    "unverified_provider_email",
    "invalid_token",
    "already_verified",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_VALID_ROLES = {role.value for role in Role}
_VALID_AUTH_METHODS = {method.value for method in AuthMethod}


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_role(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in _VALID_ROLES:
        raise ValueError(f"Invalid role: {value}")
    return value


def _validate_roles(value: Optional[Any]) -> Optional[List[str]]:
    if value is None:
        return None
    # A single role string is accepted as a one-element list
    roles = [value] if isinstance(value, str) else list(value)
    if not roles:
        raise ValueError("at least one role is required")
    for role in roles:
        _validate_role(role)
    return roles


def _validate_auth_method(value: str) -> str:
    if value not in _VALID_AUTH_METHODS:
        raise ValueError(f"Unsupported auth method: {value}")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(_Request):
    email: str
    password: Optional[str] = Field(default=None, max_length=128)
    app_endpoint: str = Field(..., max_length=512)
    username: Optional[str] = Field(default=None, max_length=64)
    roles: Optional[List[str]] = None
    auth_method: str = AuthMethod.EMAIL_PASSWORD.value

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("roles", mode="before")
    @classmethod
    def _roles(cls, value: Any) -> Optional[List[str]]:
        return _validate_roles(value)

    @field_validator("auth_method")
    @classmethod
    def _auth_method(cls, value: str) -> str:
        return _validate_auth_method(value)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., max_length=128)
    app_endpoint: str = Field(..., max_length=512)
    role: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("role")
    @classmethod
    def _role(cls, value: Optional[str]) -> Optional[str]:
        return _validate_role(value)


class TokenRefreshRequest(_Request):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(_Request):
    refresh_token: str = Field(..., max_length=2048)


class OAuthStartRequest(_Request):
    app_endpoint: str = Field(..., max_length=512)


class PasswordChangeRequest(_Request):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)


class PasswordResetRequest(_Request):
    email: str
    app_endpoint: str = Field(..., max_length=512)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(_Request):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=128)


class EmailVerificationRequest(_Request):
    token: str = Field(..., max_length=256)


class EmailVerificationResend(_Request):
    app_endpoint: str = Field(..., max_length=512)


class ProfileUpdateRequest(_Request):
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @model_validator(mode="after")
    def _not_empty(self) -> "ProfileUpdateRequest":
        if self.username is None and self.email is None:
            raise ValueError("provide username or email")
        return self


class GrantAppAccessRequest(_Request):
    app_identifier: str = Field(..., max_length=128)
    roles: List[str]
    auth_method: str = AuthMethod.EMAIL_PASSWORD.value
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("roles", mode="before")
    @classmethod
    def _roles(cls, value: Any) -> Optional[List[str]]:
        return _validate_roles(value)

    @field_validator("auth_method")
    @classmethod
    def _auth_method(cls, value: str) -> str:
        return _validate_auth_method(value)


class UpdateAppRolesRequest(_Request):
    roles: List[str]
    auth_method: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("roles", mode="before")
    @classmethod
    def _roles(cls, value: Any) -> Optional[List[str]]:
        return _validate_roles(value)

    @field_validator("auth_method")
    @classmethod
    def _auth_method(cls, value: Optional[str]) -> Optional[str]:
        return _validate_auth_method(value) if value is not None else None


class ChangeAuthMethodRequest(_Request):
    auth_method: str
    password: Optional[str] = Field(default=None, max_length=128)

    @field_validator("auth_method")
    @classmethod
    def _auth_method(cls, value: str) -> str:
        return _validate_auth_method(value)


class DeactivateAppRequest(_Request):
    reason: Optional[str] = Field(default=None, max_length=500)


class AccountStatusRequest(_Request):
    is_active: bool


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(BaseModel):
    user: dict
    tokens: TokenResponse
    app_identifier: str
    role: str
    warnings: List[str] = Field(default_factory=list)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str
