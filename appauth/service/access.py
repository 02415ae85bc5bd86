from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from appauth.logging import get_logger
from appauth.service.errors import (
    AccountDeactivated,
    AccountLocked,
    AppAccessDeactivated,
    AppAccessLocked,
    RoleNotGranted,
    WrongAuthMethod,
)
from appauth.storage.models import AppRegistration, User, utcnow

logger = get_logger(__name__)


class AccessState(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DEACTIVATED = "deactivated"


class AccessControl:
    """Per-app lockout state machine and the ordered login gates.

    Locks expire lazily: an elapsed ``locked_until`` is cleared the next time
    the registration is checked. Counter updates are plain read-modify-write
    on the user document, so two concurrent failures on the same app can
    collapse into one increment.
    """

    def __init__(
        self,
        max_login_attempts: int = 5,
        lockout_minutes: int = 15,
        *,
        global_lockout_enabled: bool = False,
        global_max_login_attempts: int = 10,
        global_lockout_minutes: int = 60,
    ) -> None:
        self.max_login_attempts = max_login_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self.global_lockout_enabled = global_lockout_enabled
        self.global_max_login_attempts = global_max_login_attempts
        self.global_lockout = timedelta(minutes=global_lockout_minutes)

    @classmethod
    def from_settings(cls, settings) -> "AccessControl":
        return cls(
            settings.max_login_attempts,
            settings.lockout_minutes,
            global_lockout_enabled=settings.global_lockout_enabled,
            global_max_login_attempts=settings.global_max_login_attempts,
            global_lockout_minutes=settings.global_lockout_minutes,
        )

    # lazy expiry -----------------------------------------------------------
    @staticmethod
    def expire_lock(registration: AppRegistration, now: datetime) -> bool:
        if registration.locked_until is not None and registration.locked_until <= now:
            registration.locked_until = None
            registration.login_attempts = 0
            return True
        return False

    @staticmethod
    def expire_global_lock(user: User, now: datetime) -> bool:
        if user.global_locked_until is not None and user.global_locked_until <= now:
            user.global_locked_until = None
            user.global_login_attempts = 0
            return True
        return False

    def state_of(
        self, user: User, registration: AppRegistration, now: Optional[datetime] = None
    ) -> AccessState:
        now = now or utcnow()
        if not user.is_active or not registration.is_active:
            return AccessState.DEACTIVATED
        self.expire_lock(registration, now)
        if registration.locked_until is not None:
            return AccessState.LOCKED
        return AccessState.ACTIVE

    # gates -----------------------------------------------------------------
    def check_login(
        self,
        user: User,
        registration: AppRegistration,
        auth_method: str,
        selected_role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Run the gates that precede the credential check.

        Order: account active, account lock (when enabled), app active, auth
        method, app lock, role. Returns the role the session will carry.
        """
        now = now or utcnow()
        if not user.is_active:
            raise AccountDeactivated()
        if self.global_lockout_enabled:
            self.expire_global_lock(user, now)
            if user.global_locked_until is not None:
                raise AccountLocked(user.global_locked_until)
        if not registration.is_active:
            raise AppAccessDeactivated(registration.app_identifier)
        if registration.auth_method != auth_method:
            raise WrongAuthMethod(registration.auth_method)
        self.expire_lock(registration, now)
        if registration.locked_until is not None:
            raise AppAccessLocked(registration.app_identifier, registration.locked_until)
        return self.select_role(registration, selected_role)

    @staticmethod
    def select_role(registration: AppRegistration, selected_role: Optional[str]) -> str:
        if selected_role is None:
            return registration.default_role
        if selected_role not in registration.roles:
            raise RoleNotGranted(selected_role, registration.roles)
        return selected_role

    # counters --------------------------------------------------------------
    def record_failure(
        self, user: User, registration: AppRegistration, now: Optional[datetime] = None
    ) -> bool:
        """Count a failed credential check; True when this failure locks the app."""
        now = now or utcnow()
        registration.login_attempts += 1
        locked = False
        if registration.login_attempts >= self.max_login_attempts:
            registration.locked_until = now + self.lockout
            locked = True
            logger.warning(
                "app_access_locked",
                user_id=user.id,
                app_identifier=registration.app_identifier,
                attempts=registration.login_attempts,
                locked_until=registration.locked_until.isoformat(),
            )
        if self.global_lockout_enabled:
            user.global_login_attempts += 1
            if user.global_login_attempts >= self.global_max_login_attempts:
                user.global_locked_until = now + self.global_lockout
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=user.global_login_attempts,
                )
        return locked

    @staticmethod
    def record_success(
        user: User, registration: AppRegistration, now: Optional[datetime] = None
    ) -> None:
        now = now or utcnow()
        registration.login_attempts = 0
        registration.locked_until = None
        registration.last_login_at = now
        user.global_login_attempts = 0
        user.global_locked_until = None
