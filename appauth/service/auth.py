from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from appauth.config import Settings
from appauth.logging import get_logger, hash_email
from appauth.service.access import AccessControl
from appauth.service.app_registry import AppRegistry
from appauth.service.credentials import CredentialStore
from appauth.service.email import EmailService
from appauth.service.errors import (
    AccountDeactivated,
    AccountLocked,
    AlreadyRegistered,
    AppAccessDeactivated,
    AppAccessLocked,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredential,
    NotFoundError,
    RoleInvalid,
    ServiceError,
    ValidationError,
    WrongAuthMethod,
)
from appauth.service.oauth import OAuthClient, OAuthIdentity
from appauth.service.passwords import PasswordHashing
from appauth.service.tokens import TokenIssuer, TokenPair, hash_token
from appauth.storage.models import ADMIN_ROLES, AuthMethod, Role, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Identity resolved from a bearer access token."""

    user_id: str
    app_identifier: Optional[str]
    role: Optional[str]
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_superadmin(self) -> bool:
        return self.role == Role.SUPERADMIN.value


@dataclass
class AuthResult:
    user: dict
    tokens: TokenPair
    app_identifier: str
    role: str
    created: bool = False
    warnings: List[str] = field(default_factory=list)


class LinkOutcome(str, Enum):
    CREATED = "created"
    LINKED = "linked"
    REJECTED = "rejected"


@dataclass
class LinkResult:
    """Outcome of binding a provider identity to an account for one app."""

    outcome: LinkOutcome
    user: Optional[User] = None
    registration_added: bool = False
    reason: Optional[ServiceError] = None

    @classmethod
    def created(cls, user: User) -> "LinkResult":
        return cls(LinkOutcome.CREATED, user=user, registration_added=True)

    @classmethod
    def linked(cls, user: User, registration_added: bool = False) -> "LinkResult":
        return cls(LinkOutcome.LINKED, user=user, registration_added=registration_added)

    @classmethod
    def rejected(cls, reason: ServiceError) -> "LinkResult":
        return cls(LinkOutcome.REJECTED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.outcome != LinkOutcome.REJECTED


@dataclass
class OAuthCompletion:
    link: LinkResult
    app_endpoint: Optional[str] = None
    auth: Optional[AuthResult] = None


@dataclass
class PasswordResetRequest:
    token: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProfileUpdate:
    user: User
    email_changed: bool = False
    warnings: List[str] = field(default_factory=list)


def public_user_view(
    user: User,
    app_identifier: Optional[str] = None,
    role: Optional[str] = None,
) -> dict:
    """Caller-facing projection of a user.

    Never carries password hashes, attempt counters, lock timestamps or
    verification/reset tokens.
    """
    view: dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "email_verified": user.email_verified,
        "is_active": user.is_active,
        "oauth_provider": user.oauth_provider,
        "linked_providers": sorted(user.provider_ids.keys()),
        "apps": [
            {
                "app_identifier": reg.app_identifier,
                "roles": list(reg.roles),
                "auth_method": reg.auth_method,
                "is_active": reg.is_active,
                "activated_at": reg.activated_at.isoformat() if reg.activated_at else None,
                "last_login_at": reg.last_login_at.isoformat() if reg.last_login_at else None,
            }
            for reg in user.app_registrations
        ],
        "created_at": user.created_at.isoformat(),
    }
    registration = user.registration_for(app_identifier) if app_identifier else None
    if registration is not None:
        view["app_identifier"] = registration.app_identifier
        view["auth_method"] = registration.auth_method
        view["available_roles"] = list(registration.roles)
        view["role"] = role or registration.default_role
    return view


class AuthService:
    """Registration, login, OAuth linking and admin operations across apps."""

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        passwords: Optional[PasswordHashing] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.registry = AppRegistry(settings.app_endpoints)
        self.passwords = passwords or PasswordHashing()
        self.credentials = CredentialStore(
            store,
            self.passwords,
            self.registry,
            password_min_length=settings.password_min_length,
        )
        self.access = AccessControl.from_settings(settings)
        self.tokens = TokenIssuer(store, settings)
        self.oauth = OAuthClient(settings, cache)
        self.email = email_service or EmailService.from_settings(settings)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # registration / login -------------------------------------------------
    async def register(
        self,
        email: str,
        password: Optional[str],
        app_endpoint: str,
        roles: Optional[Iterable[str]] = None,
        auth_method: str = AuthMethod.EMAIL_PASSWORD.value,
        username: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        app_identifier = self.registry.require(app_endpoint)
        granted = self.credentials.validate_roles(
            roles or self.registry.default_roles(app_identifier)
        )
        method = self.credentials.validate_auth_method(auth_method)
        if method != AuthMethod.EMAIL_PASSWORD.value:
            # Provider registrations are only created by a completed OAuth sign-in
            raise ValidationError(
                "OAuth registrations are created through the provider sign-in",
                detail={"auth_method": method},
            )
        if self.settings.restrict_admin_signup and ADMIN_ROLES.intersection(granted):
            raise ForbiddenError(
                "Admin roles are granted by an administrator",
                detail={"roles": granted},
            )

        user = self.credentials.find_by_email(email)
        created = False
        if user is None:
            registration = self.credentials.new_registration(
                app_identifier, granted, method, password
            )
            user = self.credentials.create(email, registration, username=username)
            created = True
        else:
            if not user.is_active:
                raise AccountDeactivated()
            if user.registration_for(app_identifier) is not None:
                raise AlreadyRegistered(app_identifier)
            registration = self.credentials.grant_roles(
                user, app_identifier, granted, method, password
            )
            if username and not user.username:
                user.username = username
            user = self.credentials.save(user)
            registration = user.registration_for(app_identifier)

        warnings: List[str] = []
        if created and not user.email_verified:
            user, sent = self._issue_email_verification(user, app_endpoint)
            if not sent:
                warnings.append("verification_email_not_sent")

        role = registration.default_role
        tokens = self.tokens.issue(
            user.id,
            app_identifier=app_identifier,
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "user_registered",
            user_id=user.id,
            app_identifier=app_identifier,
            auth_method=method,
            new_account=created,
        )
        return AuthResult(
            user=public_user_view(user, app_identifier, role),
            tokens=tokens,
            app_identifier=app_identifier,
            role=role,
            created=created,
            warnings=warnings,
        )

    async def login(
        self,
        email: str,
        password: str,
        app_endpoint: str,
        selected_role: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        app_identifier = self.registry.require(app_endpoint)
        if selected_role is not None and not self.registry.is_valid_role(selected_role):
            raise RoleInvalid(selected_role)

        user = self.credentials.find_by_email(email)
        registration = user.registration_for(app_identifier) if user else None
        if user is None or registration is None:
            self.logger.info(
                "login_unknown_account",
                email_hash=hash_email(email or ""),
                app_identifier=app_identifier,
            )
            raise InvalidCredential()

        now = self._now()
        role = self.access.check_login(
            user, registration, AuthMethod.EMAIL_PASSWORD.value, selected_role, now
        )

        if not self.credentials.verify_password_for_app(user, app_identifier, password):
            locked = self.access.record_failure(user, registration, now)
            self.credentials.save(user)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                app_identifier=app_identifier,
                attempts=registration.login_attempts,
            )
            if locked:
                raise AppAccessLocked(app_identifier, registration.locked_until)
            if self.access.global_lockout_enabled and user.global_locked_until:
                raise AccountLocked(user.global_locked_until)
            raise InvalidCredential()

        self.access.record_success(user, registration, now)
        if self.passwords.needs_rehash(registration.password):
            registration.password = self.passwords.hash(password)
        user = self.credentials.save(user)
        tokens = self.tokens.issue(
            user.id,
            app_identifier=app_identifier,
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, app_identifier=app_identifier, role=role
        )
        return AuthResult(
            user=public_user_view(user, app_identifier, role),
            tokens=tokens,
            app_identifier=app_identifier,
            role=role,
        )

    # oauth ----------------------------------------------------------------
    async def start_oauth(self, provider: str, app_endpoint: str) -> dict:
        self.registry.require(app_endpoint)
        return await self.oauth.start(provider, app_endpoint)

    def link_oauth_account(self, identity: OAuthIdentity, app_endpoint: str) -> LinkResult:
        """Bind a provider identity to an account and give it access to one app.

        Lookup is by provider id first, then by email. An existing
        registration for the app under another auth method rejects the
        attempt instead of creating a second identity.
        """
        app_identifier = self.registry.resolve(app_endpoint)
        if app_identifier is None:
            return LinkResult.rejected(ValidationError("Invalid app endpoint"))
        provider = identity.provider
        method = AuthMethod.for_provider(provider).value

        user = self.credentials.find_by_provider(provider, identity.provider_id)
        if user is None and identity.email:
            user = self.credentials.find_by_email(identity.email)
            if user is not None and not identity.email_verified:
                self.logger.warning(
                    "oauth_unverified_email_link_refused",
                    provider=provider,
                    user_id=user.id,
                )
                return LinkResult.rejected(
                    AuthenticationError(
                        "Provider email is not verified",
                        error_code="unverified_provider_email",
                    )
                )

        if user is None:
            if not identity.email:
                return LinkResult.rejected(
                    ValidationError("OAuth provider did not return an email")
                )
            try:
                registration = self.credentials.new_registration(
                    app_identifier, self.registry.default_roles(app_identifier), method
                )
                user = self.credentials.create(
                    identity.email,
                    registration,
                    username=identity.display_name,
                    provider=provider,
                    provider_id=identity.provider_id,
                    email_verified=identity.email_verified,
                )
            except ServiceError as exc:
                return LinkResult.rejected(exc)
            self.logger.info(
                "oauth_user_created",
                user_id=user.id,
                provider=provider,
                app_identifier=app_identifier,
            )
            return LinkResult.created(user)

        if not user.is_active:
            return LinkResult.rejected(AccountDeactivated())
        registration = user.registration_for(app_identifier)
        if registration is not None and registration.auth_method != method:
            return LinkResult.rejected(WrongAuthMethod(registration.auth_method))
        if registration is not None and not registration.is_active:
            return LinkResult.rejected(AppAccessDeactivated(app_identifier))

        try:
            self.credentials.link_provider(user, provider, identity.provider_id)
            added = False
            if registration is None:
                self.credentials.grant_roles(
                    user,
                    app_identifier,
                    self.registry.default_roles(app_identifier),
                    method,
                )
                added = True
            if identity.email_verified:
                user.email_verified = True
            user = self.credentials.save(user)
        except ServiceError as exc:
            return LinkResult.rejected(exc)
        self.logger.info(
            "oauth_account_linked",
            user_id=user.id,
            provider=provider,
            app_identifier=app_identifier,
            registration_added=added,
        )
        return LinkResult.linked(user, added)

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        self.oauth.register_oauth_code(provider, code, payload)

    async def complete_oauth(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OAuthCompletion:
        app_endpoint = await self.oauth.consume_state(provider, state)
        if app_endpoint is None:
            return OAuthCompletion(
                LinkResult.rejected(
                    AuthenticationError(
                        "Invalid or expired OAuth state", error_code="invalid_oauth_state"
                    )
                )
            )
        identity = await self.oauth.exchange_code(provider, code)
        if identity is None:
            return OAuthCompletion(
                LinkResult.rejected(
                    AuthenticationError(
                        "OAuth exchange failed", error_code="oauth_exchange_failed"
                    )
                ),
                app_endpoint,
            )
        link = self.link_oauth_account(identity, app_endpoint)
        if not link.ok:
            self.logger.info(
                "oauth_link_rejected",
                provider=provider,
                reason=link.reason.error_code if link.reason else None,
            )
            return OAuthCompletion(link, app_endpoint)

        app_identifier = self.registry.require(app_endpoint)
        user = link.user
        registration = user.registration_for(app_identifier)
        now = self._now()
        try:
            role = self.access.check_login(
                user, registration, AuthMethod.for_provider(provider).value, None, now
            )
        except ServiceError as exc:
            return OAuthCompletion(LinkResult.rejected(exc), app_endpoint)
        self.access.record_success(user, registration, now)
        user = self.credentials.save(user)
        tokens = self.tokens.issue(
            user.id,
            app_identifier=app_identifier,
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        link.user = user
        return OAuthCompletion(
            link,
            app_endpoint,
            AuthResult(
                user=public_user_view(user, app_identifier, role),
                tokens=tokens,
                app_identifier=app_identifier,
                role=role,
                created=link.outcome == LinkOutcome.CREATED,
            ),
        )

    # tokens ---------------------------------------------------------------
    async def refresh_tokens(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        record = self.tokens.rotate(refresh_token)
        if record is None:
            raise AuthenticationError(
                "Invalid or expired refresh token", error_code="invalid_refresh_token"
            )
        user = self.credentials.find_by_id(record.user_id)
        if user is None:
            raise AuthenticationError(
                "Invalid or expired refresh token", error_code="invalid_refresh_token"
            )
        if not user.is_active:
            raise AccountDeactivated()
        registration = (
            user.registration_for(record.app_identifier) if record.app_identifier else None
        )
        role = None
        if registration is not None:
            if not registration.is_active:
                raise AppAccessDeactivated(registration.app_identifier)
            role = record.role if record.role in registration.roles else registration.default_role
        tokens = self.tokens.issue(
            user.id,
            app_identifier=record.app_identifier,
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return AuthResult(
            user=public_user_view(user, record.app_identifier, role),
            tokens=tokens,
            app_identifier=record.app_identifier or "",
            role=role or "",
        )

    async def logout(self, refresh_token: str) -> bool:
        return self.tokens.revoke(refresh_token)

    async def logout_all(self, user_id: str) -> int:
        return self.tokens.revoke_all(user_id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1]

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self.tokens.decode_access_token(token)
        if not payload:
            return None
        user = self.credentials.find_by_id(payload.get("sub"))
        if user is None or not user.is_active:
            return None
        app_identifier = payload.get("app")
        role = payload.get("role")
        roles: List[str] = []
        if app_identifier:
            registration = user.registration_for(app_identifier)
            if registration is None or not registration.is_active:
                return None
            if registration.password_changed_at is not None:
                # Tokens minted before a password change are void
                if registration.password_changed_at.timestamp() > float(payload.get("iat", 0)):
                    return None
            if role and role not in registration.roles:
                return None
            roles = list(registration.roles)
        return AuthContext(
            user_id=user.id, app_identifier=app_identifier, role=role, roles=roles
        )

    def get_user(self, user_id: str) -> User:
        return self.credentials.require(user_id)

    # self service -----------------------------------------------------------
    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        app_endpoint: Optional[str] = None,
    ) -> ProfileUpdate:
        """Change display name and/or email of the caller's account.

        A new email is unverified; when ``app_endpoint`` is known a fresh
        verification link is sent for it.
        """
        user = self.credentials.require(user_id)
        if not user.is_active:
            raise AccountDeactivated()
        email_changed = False
        if email is not None:
            email_changed = self.credentials.change_email(user, email)
        if username:
            user.username = username.strip()
        user = self.credentials.save(user)

        warnings: List[str] = []
        if email_changed and app_endpoint:
            user, sent = self._issue_email_verification(user, app_endpoint)
            if not sent:
                warnings.append("verification_email_not_sent")
        self.logger.info(
            "profile_updated", user_id=user.id, email_changed=email_changed
        )
        return ProfileUpdate(user=user, email_changed=email_changed, warnings=warnings)

    async def delete_own_account(self, user_id: str) -> bool:
        """Revoke every refresh token of the caller, then remove the account."""
        self.credentials.require(user_id)
        revoked = self.tokens.revoke_all(user_id)
        deleted = self.credentials.delete(user_id)
        self.logger.info("account_deleted", user_id=user_id, revoked_tokens=revoked)
        return deleted

    # password lifecycle ---------------------------------------------------
    async def change_app_password(
        self,
        user_id: str,
        app_identifier: str,
        current_password: str,
        new_password: str,
    ) -> TokenPair:
        user = self.credentials.require(user_id)
        registration = user.registration_for(app_identifier)
        if registration is None:
            raise NotFoundError("user is not registered for this app")
        if registration.auth_method != AuthMethod.EMAIL_PASSWORD.value:
            raise WrongAuthMethod(registration.auth_method)
        self.credentials.change_app_password(
            user, app_identifier, current_password, new_password
        )
        user = self.credentials.save(user)
        self.tokens.revoke_all(user.id)
        self.logger.info(
            "password_changed", user_id=user.id, app_identifier=app_identifier
        )
        return self.tokens.issue(
            user.id,
            app_identifier=app_identifier,
            role=user.registration_for(app_identifier).default_role,
        )

    async def request_password_reset(
        self, email: str, app_endpoint: str
    ) -> PasswordResetRequest:
        app_identifier = self.registry.require(app_endpoint)
        user = self.credentials.find_by_email(email)
        registration = user.registration_for(app_identifier) if user else None
        if (
            user is None
            or registration is None
            or registration.auth_method != AuthMethod.EMAIL_PASSWORD.value
        ):
            # Same outcome as a real request so callers cannot test for accounts
            self.logger.info(
                "password_reset_ignored",
                email_hash=hash_email(email or ""),
                app_identifier=app_identifier,
            )
            return PasswordResetRequest()

        token = secrets.token_hex(32)
        user.password_reset_token_hash = hash_token(token)
        user.password_reset_app = app_identifier
        user.password_reset_expires_at = self._now() + timedelta(
            minutes=self.settings.password_reset_ttl_minutes
        )
        self.credentials.save(user)

        result = PasswordResetRequest(token=token)
        sent = self.email.send_password_reset(
            user.email, token, app_endpoint, self.settings.password_reset_ttl_minutes
        )
        if not sent:
            self.logger.warning("password_reset_email_failed", user_id=user.id)
            result.warnings.append("reset_email_not_sent")
        self.logger.info(
            "password_reset_requested", user_id=user.id, app_identifier=app_identifier
        )
        return result

    async def complete_password_reset(self, token: str, new_password: str) -> User:
        user = self.store.get_user_by_token_hash("password_reset", hash_token(token or ""))
        now = self._now()
        if (
            user is None
            or not user.password_reset_app
            or user.password_reset_expires_at is None
            or user.password_reset_expires_at <= now
        ):
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError(
                "Invalid or expired reset token", error_code="invalid_token"
            )
        app_identifier = user.password_reset_app
        self.credentials.set_app_password(user, app_identifier, new_password)
        user.password_reset_token_hash = None
        user.password_reset_app = None
        user.password_reset_expires_at = None
        user = self.credentials.save(user)
        self.tokens.revoke_all(user.id)
        self.logger.info(
            "password_reset_completed", user_id=user.id, app_identifier=app_identifier
        )
        return user

    # email verification ---------------------------------------------------
    def _issue_email_verification(self, user: User, app_endpoint: str) -> tuple[User, bool]:
        token = secrets.token_hex(32)
        user.email_verification_token_hash = hash_token(token)
        user.email_verification_expires_at = self._now() + timedelta(
            hours=self.settings.email_verification_ttl_hours
        )
        user = self.credentials.save(user)
        sent = self.email.send_email_verification(
            user.email, token, app_endpoint, self.settings.email_verification_ttl_hours
        )
        if not sent:
            self.logger.warning("verification_email_failed", user_id=user.id)
        return user, sent

    async def request_email_verification(
        self, user_id: str, app_endpoint: str
    ) -> List[str]:
        self.registry.require(app_endpoint)
        user = self.credentials.require(user_id)
        if user.email_verified:
            raise ConflictError("Email already verified", error_code="already_verified")
        _, sent = self._issue_email_verification(user, app_endpoint)
        return [] if sent else ["verification_email_not_sent"]

    async def complete_email_verification(self, token: str) -> User:
        user = self.store.get_user_by_token_hash(
            "email_verification", hash_token(token or "")
        )
        if (
            user is None
            or user.email_verification_expires_at is None
            or user.email_verification_expires_at <= self._now()
        ):
            raise ValidationError(
                "Invalid or expired verification token", error_code="invalid_token"
            )
        user.email_verified = True
        user.email_verification_token_hash = None
        user.email_verification_expires_at = None
        user = self.credentials.save(user)
        self.logger.info("email_verified", user_id=user.id)
        return user

    # admin ----------------------------------------------------------------
    def _require_app(self, app_identifier: str) -> str:
        if not self.registry.is_valid_app(app_identifier):
            raise ValidationError(
                "unknown app identifier", detail={"app_identifier": app_identifier}
            )
        return app_identifier

    def ensure_can_manage(self, actor: AuthContext, app_identifier: Optional[str] = None) -> None:
        """Admins manage their own app; superadmins manage every app and account."""
        if not actor.is_admin:
            raise ForbiddenError("Admin access required")
        if actor.is_superadmin:
            return
        if app_identifier is None or app_identifier != actor.app_identifier:
            raise ForbiddenError(
                "Admin access is limited to your own app",
                detail={"app_identifier": app_identifier},
            )

    def admin_user_view(self, user: User) -> dict:
        view = public_user_view(user)
        now = self._now()
        for entry, registration in zip(view["apps"], user.app_registrations):
            entry["status"] = self.access.state_of(user, registration, now).value
            entry["deactivated_at"] = (
                registration.deactivated_at.isoformat() if registration.deactivated_at else None
            )
            entry["deactivated_by"] = registration.deactivated_by
            entry["deactivation_reason"] = registration.deactivation_reason
        return view

    def admin_list_users(
        self,
        actor: AuthContext,
        app_identifier: Optional[str] = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> List[dict]:
        if app_identifier is None and not actor.is_superadmin:
            app_identifier = actor.app_identifier
        if app_identifier is not None:
            self._require_app(app_identifier)
        self.ensure_can_manage(actor, app_identifier)
        users = self.credentials.list_users(app_identifier, limit=limit, offset=offset)
        return [self.admin_user_view(user) for user in users]

    def admin_get_user(self, actor: AuthContext, user_id: str) -> dict:
        user = self.credentials.require(user_id)
        if not actor.is_superadmin:
            self.ensure_can_manage(actor, actor.app_identifier)
            if user.registration_for(actor.app_identifier) is None:
                raise NotFoundError("user not found", detail={"user_id": user_id})
        return self.admin_user_view(user)

    def admin_grant_app_access(
        self,
        actor: AuthContext,
        user_id: str,
        app_identifier: str,
        roles: Iterable[str],
        auth_method: str = AuthMethod.EMAIL_PASSWORD.value,
        password: Optional[str] = None,
    ) -> dict:
        self.ensure_can_manage(actor, self._require_app(app_identifier))
        user = self.credentials.require(user_id)
        self.credentials.grant_roles(user, app_identifier, roles, auth_method, password)
        user = self.credentials.save(user)
        self.logger.info(
            "admin_granted_app_access",
            actor_id=actor.user_id,
            user_id=user.id,
            app_identifier=app_identifier,
        )
        return self.admin_user_view(user)

    def admin_set_app_roles(
        self,
        actor: AuthContext,
        user_id: str,
        app_identifier: str,
        roles: Iterable[str],
        auth_method: Optional[str] = None,
        password: Optional[str] = None,
    ) -> dict:
        self.ensure_can_manage(actor, self._require_app(app_identifier))
        user = self.credentials.require(user_id)
        self.credentials.override_registration(
            user, app_identifier, roles, auth_method, password
        )
        user = self.credentials.save(user)
        self.logger.info(
            "admin_set_app_roles",
            actor_id=actor.user_id,
            user_id=user.id,
            app_identifier=app_identifier,
        )
        return self.admin_user_view(user)

    def admin_change_auth_method(
        self,
        actor: AuthContext,
        user_id: str,
        app_identifier: str,
        auth_method: str,
        password: Optional[str] = None,
    ) -> dict:
        self.ensure_can_manage(actor, self._require_app(app_identifier))
        user = self.credentials.require(user_id)
        self.credentials.change_auth_method(user, app_identifier, auth_method, password)
        user = self.credentials.save(user)
        return self.admin_user_view(user)

    def admin_set_app_active(
        self,
        actor: AuthContext,
        user_id: str,
        app_identifier: str,
        active: bool,
        reason: Optional[str] = None,
    ) -> dict:
        self.ensure_can_manage(actor, self._require_app(app_identifier))
        user = self.credentials.require(user_id)
        self.credentials.set_app_active(
            user, app_identifier, active, actor=actor.user_id, reason=reason
        )
        user = self.credentials.save(user)
        self.logger.info(
            "admin_app_access_reactivated" if active else "admin_app_access_deactivated",
            actor_id=actor.user_id,
            user_id=user.id,
            app_identifier=app_identifier,
        )
        return self.admin_user_view(user)

    async def admin_set_account_active(
        self, actor: AuthContext, user_id: str, active: bool
    ) -> dict:
        if not actor.is_superadmin:
            raise ForbiddenError("Superadmin access required")
        if user_id == actor.user_id and not active:
            raise ValidationError("cannot deactivate your own account")
        user = self.credentials.require(user_id)
        self.credentials.set_account_active(user, active)
        user = self.credentials.save(user)
        if not active:
            self.tokens.revoke_all(user.id)
        self.logger.info(
            "admin_account_status_changed",
            actor_id=actor.user_id,
            user_id=user.id,
            is_active=active,
        )
        return self.admin_user_view(user)

    async def admin_delete_user(self, actor: AuthContext, user_id: str) -> bool:
        if not actor.is_superadmin:
            raise ForbiddenError("Superadmin access required")
        if user_id == actor.user_id:
            raise ValidationError("cannot delete your own account")
        self.credentials.require(user_id)
        self.tokens.revoke_all(user_id)
        deleted = self.credentials.delete(user_id)
        self.logger.info("admin_user_deleted", actor_id=actor.user_id, user_id=user_id)
        return deleted

