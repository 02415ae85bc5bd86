"""Service-level tests for registration, login and lockout across apps."""

import pytest

from appauth.service.errors import (
    AccountDeactivated,
    AlreadyRegistered,
    AppAccessDeactivated,
    AppAccessLocked,
    DuplicateEmail,
    ForbiddenError,
    InvalidAppEndpoint,
    InvalidCredential,
    NotFoundError,
    RoleInvalid,
    RoleNotGranted,
    ValidationError,
    WrongAuthMethod,
)
from appauth.service.oauth import OAuthIdentity
from appauth.service.tokens import hash_token

CUSTOMER = "http://localhost:5173"
BUSINESS = "http://localhost:5174"
TODO = "http://localhost:3000"


class TestRegister:
    """Registration creates one account per email and one registration per app."""

    async def test_register_then_login(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        assert result.created
        assert result.role == "user"
        assert result.app_identifier == "todo-app"

        login = await auth_service.login("alice@x.com", "pw123456", TODO)
        assert login.role in result.user["available_roles"]
        assert login.user["id"] == result.user["id"]

    async def test_business_app_defaults_to_business_user(self, auth_service):
        result = await auth_service.register("shop@x.com", "pw123456", BUSINESS)
        assert result.role == "business-user"
        assert result.user["available_roles"] == ["business-user"]

    async def test_explicit_multiple_roles(self, auth_service):
        result = await auth_service.register(
            "multi@x.com", "pw123456", BUSINESS, roles=["business-user", "user"]
        )
        assert result.user["available_roles"] == ["business-user", "user"]
        login = await auth_service.login("multi@x.com", "pw123456", BUSINESS, "user")
        assert login.role == "user"

    async def test_same_email_two_apps_is_one_user(self, auth_service, memory_store):
        first = await auth_service.register("alice@x.com", "pw123456", TODO)
        second = await auth_service.register("alice@x.com", "pw123456", CUSTOMER)
        assert not second.created
        assert first.user["id"] == second.user["id"]
        users = memory_store.list_users()
        assert len(users) == 1
        assert users[0].app_identifiers() == ["todo-app", "sera-food-customer-app"]

    async def test_already_registered(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        with pytest.raises(AlreadyRegistered):
            await auth_service.register("alice@x.com", "pw123456", TODO)

    async def test_unknown_endpoint(self, auth_service):
        with pytest.raises(InvalidAppEndpoint):
            await auth_service.register("alice@x.com", "pw123456", "https://unknown.example")

    async def test_unknown_role(self, auth_service):
        with pytest.raises(RoleInvalid):
            await auth_service.register("alice@x.com", "pw123456", TODO, roles=["owner"])

    async def test_admin_roles_not_self_service(self, auth_service):
        with pytest.raises(ForbiddenError):
            await auth_service.register("boss@x.com", "pw123456", TODO, roles=["admin"])

    async def test_oauth_method_cannot_be_self_registered(self, auth_service, memory_store):
        victim = await auth_service.register("victim@x.com", "pw123456", CUSTOMER)
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.register("victim@x.com", None, TODO, auth_method="google-oauth")
        assert exc_info.value.detail == {"auth_method": "google-oauth"}
        with pytest.raises(ValidationError):
            await auth_service.register("fresh@x.com", None, TODO, auth_method="github-oauth")
        user = memory_store.get_user(victim.user["id"])
        assert user.app_identifiers() == ["sera-food-customer-app"]
        assert memory_store.get_user_by_email("fresh@x.com") is None

    async def test_public_view_hides_secrets(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        flat = repr(result.user)
        assert "$argon2" not in flat
        assert "login_attempts" not in flat
        assert "locked_until" not in flat
        assert "token" not in flat

    async def test_verification_email_sent_for_new_account(self, auth_service, email_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        assert result.warnings == []
        assert email_service.verifications[0][0] == "alice@x.com"
        assert email_service.verifications[0][2] == TODO

    async def test_email_failure_is_soft_warning(self, auth_service, email_service, memory_store):
        email_service.deliver = False
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        assert result.warnings == ["verification_email_not_sent"]
        assert memory_store.get_user_by_email("alice@x.com") is not None


class TestLogin:
    async def test_unknown_user_and_unregistered_app_look_alike(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        with pytest.raises(InvalidCredential) as unknown_user:
            await auth_service.login("nobody@x.com", "pw123456", TODO)
        with pytest.raises(InvalidCredential) as unknown_app:
            await auth_service.login("alice@x.com", "pw123456", CUSTOMER)
        with pytest.raises(InvalidCredential) as wrong_password:
            await auth_service.login("alice@x.com", "nope-nope", TODO)
        assert unknown_user.value.message == unknown_app.value.message == wrong_password.value.message

    async def test_role_not_granted(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        with pytest.raises(RoleNotGranted) as exc_info:
            await auth_service.login("alice@x.com", "pw123456", TODO, selected_role="admin")
        assert exc_info.value.detail["available_roles"] == ["user"]

    async def test_password_login_on_oauth_registration(self, auth_service):
        link = auth_service.link_oauth_account(
            OAuthIdentity("google", "g-1", "alice@x.com", "Alice", True), TODO
        )
        assert link.ok
        with pytest.raises(WrongAuthMethod) as exc_info:
            await auth_service.login("alice@x.com", "pw123456", TODO)
        assert exc_info.value.detail["auth_method"] == "google-oauth"

    async def test_lockout_is_per_app(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.register("alice@x.com", "pw123456", CUSTOMER)
        for _ in range(4):
            with pytest.raises(InvalidCredential):
                await auth_service.login("alice@x.com", "wrongpw", TODO)
        with pytest.raises(AppAccessLocked):
            await auth_service.login("alice@x.com", "wrongpw", TODO)
        # Correct password does not unlock
        with pytest.raises(AppAccessLocked):
            await auth_service.login("alice@x.com", "pw123456", TODO)
        result = await auth_service.login("alice@x.com", "pw123456", CUSTOMER)
        assert result.app_identifier == "sera-food-customer-app"

    async def test_success_resets_attempts(self, auth_service, memory_store):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        for _ in range(3):
            with pytest.raises(InvalidCredential):
                await auth_service.login("alice@x.com", "wrongpw", TODO)
        await auth_service.login("alice@x.com", "pw123456", TODO)
        registration = memory_store.get_user_by_email("alice@x.com").registration_for("todo-app")
        assert registration.login_attempts == 0
        assert registration.last_login_at is not None

    async def test_deactivating_one_app_leaves_other(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.register("alice@x.com", "pw123456", CUSTOMER)
        user = auth_service.get_user(result.user["id"])
        auth_service.credentials.set_app_active(user, "todo-app", False)
        auth_service.credentials.save(user)

        with pytest.raises(AppAccessDeactivated):
            await auth_service.login("alice@x.com", "pw123456", TODO)
        other = await auth_service.login("alice@x.com", "pw123456", CUSTOMER)
        assert other.role == "user"

    async def test_account_deactivation_blocks_every_app(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        user = auth_service.get_user(result.user["id"])
        auth_service.credentials.set_account_active(user, False)
        auth_service.credentials.save(user)
        with pytest.raises(AccountDeactivated):
            await auth_service.login("alice@x.com", "pw123456", TODO)
        with pytest.raises(AccountDeactivated):
            await auth_service.register("alice@x.com", "pw123456", CUSTOMER)


class TestAliceScenario:
    """Two apps, five failures on one, the other still opens."""

    async def test_scenario(self, auth_service, memory_store):
        first = await auth_service.register("alice@x.com", "pw123456", CUSTOMER)
        assert first.role == "user"

        second = await auth_service.register("alice@x.com", "pw123456", TODO)
        assert second.user["id"] == first.user["id"]
        stored = memory_store.get_user_by_email("alice@x.com")
        assert len(stored.app_registrations) == 2

        outcomes = []
        for _ in range(6):
            try:
                await auth_service.login("alice@x.com", "wrongpw", CUSTOMER)
            except (InvalidCredential, AppAccessLocked) as exc:
                outcomes.append(type(exc))
        assert outcomes[:4] == [InvalidCredential] * 4
        assert outcomes[4:] == [AppAccessLocked, AppAccessLocked]

        result = await auth_service.login("alice@x.com", "pw123456", TODO)
        assert result.app_identifier == "todo-app"
        assert result.tokens.access_token


class TestPasswordLifecycle:
    async def test_change_password_revokes_refresh_tokens(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        old_refresh = result.tokens.refresh_token
        pair = await auth_service.change_app_password(
            result.user["id"], "todo-app", "pw123456", "newpass99"
        )
        assert pair.access_token
        assert auth_service.tokens.rotate(old_refresh) is None
        await auth_service.login("alice@x.com", "newpass99", TODO)

    async def test_reset_flow(self, auth_service, email_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.register("alice@x.com", "otherpw1", CUSTOMER)
        request = await auth_service.request_password_reset("alice@x.com", TODO)
        assert request.token
        assert email_service.resets[0][1] == request.token

        await auth_service.complete_password_reset(request.token, "brandnew1")
        await auth_service.login("alice@x.com", "brandnew1", TODO)
        # Only the requested app changed
        await auth_service.login("alice@x.com", "otherpw1", CUSTOMER)

    async def test_reset_token_is_single_use(self, auth_service):
        await auth_service.register("alice@x.com", "pw123456", TODO)
        request = await auth_service.request_password_reset("alice@x.com", TODO)
        await auth_service.complete_password_reset(request.token, "brandnew1")
        with pytest.raises(ValidationError) as exc_info:
            await auth_service.complete_password_reset(request.token, "another12")
        assert exc_info.value.error_code == "invalid_token"

    async def test_reset_for_unknown_account_is_silent(self, auth_service, email_service):
        request = await auth_service.request_password_reset("ghost@x.com", TODO)
        assert request.token is None
        assert email_service.resets == []

    async def test_email_verification(self, auth_service, email_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        token = email_service.verifications[0][1]
        user = await auth_service.complete_email_verification(token)
        assert user.email_verified
        assert auth_service.get_user(result.user["id"]).email_verified


class TestSelfService:
    """Profile changes and account removal by the account owner."""

    async def test_update_username(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        update = await auth_service.update_profile(result.user["id"], username="Alice A.")
        assert update.user.username == "Alice A."
        assert not update.email_changed
        assert auth_service.get_user(result.user["id"]).username == "Alice A."

    async def test_email_change_resets_verification(self, auth_service, email_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.complete_email_verification(email_service.verifications[0][1])

        update = await auth_service.update_profile(
            result.user["id"], email="Alice.New@X.com", app_endpoint=TODO
        )
        assert update.email_changed
        assert update.user.email == "alice.new@x.com"
        assert not update.user.email_verified
        assert email_service.verifications[-1][0] == "alice.new@x.com"

        login = await auth_service.login("alice.new@x.com", "pw123456", TODO)
        assert login.user["id"] == result.user["id"]
        with pytest.raises(InvalidCredential):
            await auth_service.login("alice@x.com", "pw123456", TODO)

    async def test_email_change_to_taken_address(self, auth_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.register("bob@x.com", "pw123456", TODO)
        with pytest.raises(DuplicateEmail):
            await auth_service.update_profile(result.user["id"], email="BOB@x.com")
        assert auth_service.get_user(result.user["id"]).email == "alice@x.com"

    async def test_same_email_is_not_a_change(self, auth_service, email_service):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        sent = len(email_service.verifications)
        update = await auth_service.update_profile(
            result.user["id"], email="alice@x.com", app_endpoint=TODO
        )
        assert not update.email_changed
        assert len(email_service.verifications) == sent

    async def test_delete_own_account(self, auth_service, memory_store):
        result = await auth_service.register("alice@x.com", "pw123456", TODO)
        await auth_service.register("alice@x.com", "pw123456", CUSTOMER)
        assert await auth_service.delete_own_account(result.user["id"])
        assert memory_store.get_user(result.user["id"]) is None
        assert memory_store.get_refresh_token(hash_token(result.tokens.refresh_token)) is None
        assert await auth_service.authenticate(f"Bearer {result.tokens.access_token}") is None
        with pytest.raises(NotFoundError):
            await auth_service.delete_own_account(result.user["id"])
