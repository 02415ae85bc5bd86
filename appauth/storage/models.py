from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Named roles an app registration may carry."""

    USER = "user"
    BUSINESS_USER = "business-user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


ADMIN_ROLES = {Role.ADMIN.value, Role.SUPERADMIN.value}


class AuthMethod(str, Enum):
    """How a user proves identity to one app."""

    EMAIL_PASSWORD = "email-password"
    GOOGLE_OAUTH = "google-oauth"
    FACEBOOK_OAUTH = "facebook-oauth"
    GITHUB_OAUTH = "github-oauth"

    @classmethod
    def for_provider(cls, provider: str) -> "AuthMethod":
        return cls(f"{provider}-oauth")


@dataclass
class AppRegistration:
    app_identifier: str
    roles: List[str]
    auth_method: str = AuthMethod.EMAIL_PASSWORD.value
    password: Optional[str] = None
    is_active: bool = True
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    activated_at: datetime = field(default_factory=utcnow)
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None
    deactivation_reason: Optional[str] = None

    @property
    def default_role(self) -> str:
        return self.roles[0]


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    oauth_provider: Optional[str] = None
    provider_ids: Dict[str, str] = field(default_factory=dict)
    app_registrations: List[AppRegistration] = field(default_factory=list)
    global_login_attempts: int = 0
    global_locked_until: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_app: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, username: Optional[str] = None) -> "User":
        normalized = normalize_email(email)
        return cls(
            id=str(uuid.uuid4()),
            email=normalized,
            username=username or normalized.split("@", 1)[0],
        )

    def registration_for(self, app_identifier: str) -> Optional[AppRegistration]:
        for registration in self.app_registrations:
            if registration.app_identifier == app_identifier:
                return registration
        return None

    def app_identifiers(self) -> List[str]:
        return [reg.app_identifier for reg in self.app_registrations]


@dataclass
class RefreshToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    app_identifier: Optional[str] = None
    role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: str,
        ttl_minutes: int,
        *,
        app_identifier: str | None = None,
        role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            app_identifier=app_identifier,
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()
