from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from appauth.logging import get_logger
from appauth.service.app_registry import AppRegistry
from appauth.service.errors import (
    ConflictError,
    DuplicateEmail,
    NotFoundError,
    RoleInvalid,
    ValidationError,
    WrongAuthMethod,
)
from appauth.service.passwords import PasswordHashing
from appauth.storage.errors import ConstraintViolation
from appauth.storage.models import (
    AppRegistration,
    AuthMethod,
    User,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore:
    """Operations over the user aggregate and its per-app registrations.

    Mutators change the ``User`` in place; ``save`` persists the whole document
    after running the password hook, so one request is one read-modify-write.
    """

    def __init__(
        self,
        store,
        passwords: PasswordHashing,
        registry: AppRegistry,
        *,
        password_min_length: int = 6,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.registry = registry
        self.password_min_length = password_min_length

    # lookups ---------------------------------------------------------------
    def find_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_user_by_email(normalized)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self.store.get_user_by_provider(provider, provider_id)

    def require(self, user_id: str) -> User:
        user = self.find_by_id(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(
        self, app_identifier: Optional[str] = None, *, limit: int = 100, offset: int = 0
    ) -> List[User]:
        return self.store.list_users(app_identifier, limit=limit, offset=offset)

    # validation ------------------------------------------------------------
    def validate_roles(self, roles: Iterable[str]) -> List[str]:
        cleaned: List[str] = []
        for role in roles or []:
            if not self.registry.is_valid_role(role):
                raise RoleInvalid(role)
            if role not in cleaned:
                cleaned.append(role)
        if not cleaned:
            raise ValidationError("at least one role is required", detail={"field": "roles"})
        return cleaned

    @staticmethod
    def validate_auth_method(auth_method: str) -> str:
        try:
            return AuthMethod(auth_method).value
        except ValueError:
            raise ValidationError(
                "unsupported auth method", detail={"auth_method": auth_method}
            )

    def validate_password(self, password: Optional[str]) -> str:
        if not password or len(password) < self.password_min_length:
            raise ValidationError(
                f"password must be at least {self.password_min_length} characters",
                detail={"field": "password"},
            )
        return password

    def _require_registration(self, user: User, app_identifier: str) -> AppRegistration:
        registration = user.registration_for(app_identifier)
        if registration is None:
            raise NotFoundError(
                "user is not registered for this app",
                detail={"app_identifier": app_identifier},
            )
        return registration

    # construction ----------------------------------------------------------
    def new_registration(
        self,
        app_identifier: str,
        roles: Iterable[str],
        auth_method: str,
        password: Optional[str] = None,
    ) -> AppRegistration:
        if not self.registry.is_valid_app(app_identifier):
            raise ValidationError(
                "unknown app identifier", detail={"app_identifier": app_identifier}
            )
        method = self.validate_auth_method(auth_method)
        registration = AppRegistration(
            app_identifier=app_identifier,
            roles=self.validate_roles(roles),
            auth_method=method,
        )
        if method == AuthMethod.EMAIL_PASSWORD.value:
            registration.password = self.passwords.hash(self.validate_password(password))
        return registration

    def create(
        self,
        email: str,
        registration: AppRegistration,
        *,
        username: Optional[str] = None,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        if self.find_by_email(normalized):
            raise DuplicateEmail()
        user = User.new(normalized, username)
        user.email_verified = email_verified
        if provider and provider_id:
            user.oauth_provider = provider
            user.provider_ids[provider] = provider_id
        user.app_registrations.append(registration)
        self._apply_save_hooks(user)
        try:
            return self.store.create_user(user)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmail() from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc

    # registration mutations ------------------------------------------------
    def grant_roles(
        self,
        user: User,
        app_identifier: str,
        roles: Iterable[str],
        auth_method: str = AuthMethod.EMAIL_PASSWORD.value,
        password: Optional[str] = None,
    ) -> AppRegistration:
        """Add a registration or union ``roles`` into the existing one."""
        registration = user.registration_for(app_identifier)
        if registration is None:
            registration = self.new_registration(app_identifier, roles, auth_method, password)
            user.app_registrations.append(registration)
            return registration
        method = self.validate_auth_method(auth_method)
        if method != registration.auth_method:
            raise WrongAuthMethod(registration.auth_method)
        for role in self.validate_roles(roles):
            if role not in registration.roles:
                registration.roles.append(role)
        return registration

    def override_registration(
        self,
        user: User,
        app_identifier: str,
        roles: Iterable[str],
        auth_method: Optional[str] = None,
        password: Optional[str] = None,
    ) -> AppRegistration:
        """Add a registration or replace its roles wholesale (admin override)."""
        registration = user.registration_for(app_identifier)
        if registration is None:
            registration = self.new_registration(
                app_identifier,
                roles,
                auth_method or AuthMethod.EMAIL_PASSWORD.value,
                password,
            )
            user.app_registrations.append(registration)
            return registration
        registration.roles = self.validate_roles(roles)
        if auth_method and self.validate_auth_method(auth_method) != registration.auth_method:
            self.change_auth_method(user, app_identifier, auth_method, password)
        elif password and registration.auth_method == AuthMethod.EMAIL_PASSWORD.value:
            self.set_app_password(user, app_identifier, password)
        return registration

    def change_auth_method(
        self,
        user: User,
        app_identifier: str,
        auth_method: str,
        password: Optional[str] = None,
    ) -> AppRegistration:
        registration = self._require_registration(user, app_identifier)
        method = self.validate_auth_method(auth_method)
        if method == AuthMethod.EMAIL_PASSWORD.value:
            registration.password = self.passwords.hash(self.validate_password(password))
            registration.password_changed_at = utcnow()
        else:
            registration.password = None
        previous = registration.auth_method
        registration.auth_method = method
        registration.login_attempts = 0
        registration.locked_until = None
        logger.info(
            "auth_method_changed",
            user_id=user.id,
            app_identifier=app_identifier,
            previous=previous,
            auth_method=method,
        )
        return registration

    # passwords -------------------------------------------------------------
    def verify_password_for_app(
        self, user: User, app_identifier: str, candidate: str
    ) -> bool:
        registration = user.registration_for(app_identifier)
        if registration is None:
            return False
        if registration.auth_method != AuthMethod.EMAIL_PASSWORD.value:
            return False
        if not registration.password:
            return False
        return self.passwords.verify(registration.password, candidate)

    def set_app_password(
        self, user: User, app_identifier: str, new_password: str
    ) -> AppRegistration:
        registration = self._require_registration(user, app_identifier)
        if registration.auth_method != AuthMethod.EMAIL_PASSWORD.value:
            raise WrongAuthMethod(registration.auth_method)
        registration.password = self.passwords.hash(self.validate_password(new_password))
        registration.password_changed_at = utcnow()
        registration.login_attempts = 0
        registration.locked_until = None
        return registration

    def change_app_password(
        self, user: User, app_identifier: str, current_password: str, new_password: str
    ) -> AppRegistration:
        if not self.verify_password_for_app(user, app_identifier, current_password):
            raise ValidationError(
                "current password is incorrect", detail={"field": "current_password"}
            )
        return self.set_app_password(user, app_identifier, new_password)

    # status ----------------------------------------------------------------
    def set_app_active(
        self,
        user: User,
        app_identifier: str,
        active: bool,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AppRegistration:
        registration = self._require_registration(user, app_identifier)
        now = now or utcnow()
        registration.is_active = active
        if active:
            registration.activated_at = now
            registration.login_attempts = 0
            registration.locked_until = None
        else:
            registration.deactivated_at = now
            registration.deactivated_by = actor
            registration.deactivation_reason = reason
        return registration

    @staticmethod
    def set_account_active(user: User, active: bool) -> User:
        user.is_active = active
        if active:
            user.global_login_attempts = 0
            user.global_locked_until = None
        return user

    def change_email(self, user: User, email: str) -> bool:
        """Move the account to a new address; returns False when unchanged.

        The new address starts unverified and pending verification or reset
        tokens issued for the old address are dropped.
        """
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        if normalized == user.email:
            return False
        other = self.find_by_email(normalized)
        if other is not None and other.id != user.id:
            raise DuplicateEmail()
        user.email = normalized
        user.email_verified = False
        user.email_verification_token_hash = None
        user.email_verification_expires_at = None
        user.password_reset_token_hash = None
        user.password_reset_app = None
        user.password_reset_expires_at = None
        logger.info("email_changed", user_id=user.id)
        return True

    @staticmethod
    def link_provider(user: User, provider: str, provider_id: str) -> None:
        existing = user.provider_ids.get(provider)
        if existing and existing != provider_id:
            raise ConflictError(
                "a different identity is already linked for this provider",
                detail={"provider": provider},
            )
        user.provider_ids[provider] = provider_id
        if not user.oauth_provider:
            user.oauth_provider = provider

    # persistence -----------------------------------------------------------
    def _apply_save_hooks(self, user: User) -> None:
        user.email = normalize_email(user.email)
        for registration in user.app_registrations:
            if not registration.roles:
                raise ValidationError(
                    "at least one role is required",
                    detail={"app_identifier": registration.app_identifier},
                )
            if registration.auth_method == AuthMethod.EMAIL_PASSWORD.value:
                registration.password = self.passwords.ensure_hashed(registration.password)
            else:
                registration.password = None

    def save(self, user: User) -> User:
        self._apply_save_hooks(user)
        try:
            return self.store.save_user(user)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise DuplicateEmail() from exc
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def delete(self, user_id: str) -> bool:
        return self.store.delete_user(user_id)
